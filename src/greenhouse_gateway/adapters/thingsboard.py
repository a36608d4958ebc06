# adapters/thingsboard.py
import aiohttp
import asyncio
import json
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from .base import UpstreamPlatform
from ..core.key_registry import LAST_SEEN_ATTRIBUTE, STATUS_ATTRIBUTE
from ..models.directory import ProjectSettings
from ..storage.directory_db import DirectoryRepository
from ..utils.exceptions import DeviceNotLinkedError, ProjectNotFoundError, UpstreamError
from ..utils.helpers import utcnow
from ..utils.logging import get_logger
from ..utils.retry import async_retry_with_backoff

logger = get_logger(__name__)


@dataclass
class _CachedToken:
    token: str
    refresh_token: Optional[str]
    expires_at: float


class ThingsBoardClient(UpstreamPlatform):
    """
    ThingsBoard REST client.
    Logs in per project with the credentials stored on the project row and
    caches the JWT until shortly before it expires.
    """
    def __init__(self, directory: DirectoryRepository, config: Dict[str, Any],
                 clock: Callable[[], datetime] = utcnow):
        self.directory = directory
        self.request_timeout = float(config.get('request_timeout', 30))
        self.token_lifetime = float(config.get('token_lifetime_seconds', 9000))
        self.token_expiry_buffer = float(config.get('token_expiry_buffer_seconds', 60))
        self.offline_threshold = int(config.get('offline_threshold_seconds', 180))
        self.telemetry_fresh = int(config.get('telemetry_fresh_seconds', 120))
        self.clock = clock
        self.session: Optional[aiohttp.ClientSession] = None
        self._tokens: Dict[str, _CachedToken] = {}

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
        return self.session

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
            logger.info("Closed ThingsBoard session")
        self.session = None

    # ------------------------------------------------------------------
    # Directory lookups
    # ------------------------------------------------------------------

    async def _project(self, project_key: str) -> ProjectSettings:
        settings = await self.directory.get_project_settings(project_key)
        if settings is None:
            raise ProjectNotFoundError(f"Project {project_key} not found")
        return settings

    async def _device_id(self, project_key: str, gh_key: str) -> str:
        greenhouse = await self.directory.get_greenhouse(project_key, gh_key)
        if greenhouse is None:
            await self._project(project_key)
        if greenhouse is None or not greenhouse.tb_device_id:
            raise DeviceNotLinkedError(f"Greenhouse {project_key}/{gh_key} has no linked device")
        return greenhouse.tb_device_id

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    @async_retry_with_backoff(max_retries=2, base_delay=0.5, exceptions=(aiohttp.ClientConnectionError,))
    async def _login(self, settings: ProjectSettings) -> _CachedToken:
        url = f"{settings.tb_base_url}/api/auth/login"
        try:
            async with self._get_session().post(url, json={
                "username": settings.tb_username,
                "password": settings.tb_password,
            }) as response:
                if response.status != 200:
                    body = await response.text()
                    raise UpstreamError(
                        f"ThingsBoard login failed for project {settings.key}",
                        status=response.status, body=body
                    )
                data = await response.json(content_type=None)
        except asyncio.TimeoutError:
            raise UpstreamError("ThingsBoard login timed out", status=408)

        logger.info(f"Logged in to ThingsBoard for project {settings.key}")
        return _CachedToken(
            token=data["token"],
            refresh_token=data.get("refreshToken"),
            expires_at=time.monotonic() + self.token_lifetime
        )

    async def get_token(self, settings: ProjectSettings) -> str:
        cached = self._tokens.get(settings.key)
        if cached and cached.expires_at > time.monotonic() + self.token_expiry_buffer:
            return cached.token

        cached = await self._login(settings)
        self._tokens[settings.key] = cached
        return cached.token

    def clear_token(self, project_key: str) -> None:
        self._tokens.pop(project_key, None)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _request(self, project_key: str, method: str, endpoint: str,
                       params: Optional[Dict[str, Any]] = None,
                       payload: Optional[Any] = None) -> Any:
        """Authenticated request, retried once with a fresh token on 401/403"""
        settings = await self._project(project_key)
        url = f"{settings.tb_base_url}{endpoint}"

        for attempt in range(2):
            token = await self.get_token(settings)
            headers = {"X-Authorization": f"Bearer {token}"}
            try:
                async with self._get_session().request(
                    method, url, params=params, json=payload, headers=headers
                ) as response:
                    if response.status in (401, 403) and attempt == 0:
                        logger.info(f"Token rejected for project {project_key}, logging in again")
                        self.clear_token(project_key)
                        continue

                    text = await response.text()
                    if response.status >= 400:
                        logger.error(f"ThingsBoard error [{response.status}] {method} {endpoint}: {text}")
                        raise UpstreamError(
                            f"ThingsBoard request failed with status {response.status}",
                            status=response.status, body=text
                        )
                    return json.loads(text) if text else {}
            except asyncio.TimeoutError:
                raise UpstreamError(f"ThingsBoard request timed out: {method} {endpoint}", status=408)
            except aiohttp.ClientError as e:
                raise UpstreamError(f"ThingsBoard connection error: {e}")

        # unreachable
        raise UpstreamError("ThingsBoard authentication failed", status=401)

    # ------------------------------------------------------------------
    # Platform API
    # ------------------------------------------------------------------

    async def get_latest_telemetry(self, project_key: str, gh_key: str,
                                   keys: Sequence[str]) -> Dict[str, List[Dict[str, Any]]]:
        device_id = await self._device_id(project_key, gh_key)
        return await self._request(
            project_key, "GET",
            f"/api/plugins/telemetry/DEVICE/{device_id}/values/timeseries",
            params={"keys": ",".join(keys), "limit": 1}
        )

    async def get_timeseries(self, project_key: str, gh_key: str, keys: Sequence[str],
                             start_ts: int, end_ts: int, interval: Optional[int] = None,
                             agg: Optional[str] = None,
                             limit: Optional[int] = None) -> Dict[str, List[Dict[str, Any]]]:
        device_id = await self._device_id(project_key, gh_key)
        params: Dict[str, Any] = {
            "keys": ",".join(keys),
            "startTs": start_ts,
            "endTs": end_ts,
        }
        if interval:
            params["interval"] = interval
        if agg:
            params["agg"] = agg
        if limit:
            params["limit"] = limit
        return await self._request(
            project_key, "GET",
            f"/api/plugins/telemetry/DEVICE/{device_id}/values/timeseries",
            params=params
        )

    async def get_attributes(self, project_key: str, gh_key: str,
                             keys: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        device_id = await self._device_id(project_key, gh_key)
        params = None
        if keys and "*" not in keys:
            params = {"keys": ",".join(keys)}
        response = await self._request(
            project_key, "GET",
            f"/api/plugins/telemetry/DEVICE/{device_id}/values/attributes",
            params=params
        )
        return {item["key"]: item.get("value") for item in response or []}

    async def set_attributes(self, project_key: str, gh_key: str, attributes: Dict[str, Any],
                             scope: str = "SHARED_SCOPE") -> None:
        device_id = await self._device_id(project_key, gh_key)
        await self._request(
            project_key, "POST",
            f"/api/plugins/telemetry/DEVICE/{device_id}/attributes/{scope}",
            payload=attributes
        )

    async def send_rpc(self, project_key: str, gh_key: str, method: str, params: Any,
                       timeout_ms: Optional[int] = None) -> Dict[str, Any]:
        # Never retried, a repeated toggle would undo the first one
        device_id = await self._device_id(project_key, gh_key)
        two_way = timeout_ms is not None and timeout_ms > 0
        body: Dict[str, Any] = {"method": method, "params": params}
        if two_way:
            body["timeout"] = timeout_ms
            endpoint = f"/api/rpc/twoway/{device_id}"
        else:
            endpoint = f"/api/rpc/oneway/{device_id}"

        logger.info(f"RPC {'two-way' if two_way else 'one-way'} to {project_key}/{gh_key}: {method}")
        response = await self._request(project_key, "POST", endpoint, payload=body)
        return response if isinstance(response, dict) else {"result": response}

    async def is_device_online(self, project_key: str, gh_key: str) -> bool:
        """
        Online when the device reported last_seen (epoch seconds) within the
        offline threshold. Without last_seen, a fresh `status` telemetry value
        of "online" decides. Lookup failures count as offline.
        """
        try:
            now = self.clock().timestamp()
            attrs = await self.get_attributes(project_key, gh_key,
                                              [STATUS_ATTRIBUTE, LAST_SEEN_ATTRIBUTE])
            last_seen = _as_number(attrs.get(LAST_SEEN_ATTRIBUTE))
            if last_seen is not None and last_seen > 0:
                age = now - last_seen
                logger.debug(f"{project_key}/{gh_key} last seen {age:.0f}s ago")
                return age <= self.offline_threshold

            telemetry = await self.get_latest_telemetry(project_key, gh_key, [STATUS_ATTRIBUTE])
            samples = telemetry.get(STATUS_ATTRIBUTE) or []
            if samples:
                latest = samples[0]
                age = now - float(latest.get("ts", 0)) / 1000
                value = latest.get("value")
                if age < self.telemetry_fresh and isinstance(value, str):
                    return value.strip().lower() == "online"
            return False
        except Exception as e:
            logger.error(f"Error checking online status of {project_key}/{gh_key}: {e}")
            return False

    async def test_connection(self, project_key: str) -> Dict[str, Any]:
        try:
            settings = await self._project(project_key)
            self.clear_token(project_key)
            await self.get_token(settings)
            return {"success": True, "message": "Connected to ThingsBoard"}
        except Exception as e:
            logger.warning(f"ThingsBoard connection test failed for {project_key}: {e}")
            return {"success": False, "message": str(e)}


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
