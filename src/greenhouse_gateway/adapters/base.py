# Abstract base class for upstream IoT platform adapters
# Each platform implementation (thingsboard.py, ...) implements the interface defined here


from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence


class UpstreamPlatform(ABC):
    """
    Device management platform the gateway proxies.
    Devices are addressed by project key and greenhouse key, the adapter
    resolves them to platform device ids.
    """

    @abstractmethod
    async def is_device_online(self, project_key: str, gh_key: str) -> bool:
        """Liveness of the greenhouse controller"""
        pass

    @abstractmethod
    async def send_rpc(self, project_key: str, gh_key: str, method: str, params: Any,
                       timeout_ms: Optional[int] = None) -> Dict[str, Any]:
        """Send an RPC, two-way when timeout_ms is given, one-way otherwise"""
        pass

    @abstractmethod
    async def get_attributes(self, project_key: str, gh_key: str,
                             keys: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_latest_telemetry(self, project_key: str, gh_key: str,
                                   keys: Sequence[str]) -> Dict[str, List[Dict[str, Any]]]:
        pass

    @abstractmethod
    async def get_timeseries(self, project_key: str, gh_key: str, keys: Sequence[str],
                             start_ts: int, end_ts: int, interval: Optional[int] = None,
                             agg: Optional[str] = None,
                             limit: Optional[int] = None) -> Dict[str, List[Dict[str, Any]]]:
        pass

    @abstractmethod
    async def set_attributes(self, project_key: str, gh_key: str, attributes: Dict[str, Any],
                             scope: str = "SHARED_SCOPE") -> None:
        pass

    @abstractmethod
    async def test_connection(self, project_key: str) -> Dict[str, Any]:
        pass

    async def close(self) -> None:
        """Release network resources. Override if needed."""
        pass
