# src/greenhouse_gateway/utils/exceptions.py
from typing import Optional

class GreenhouseGatewayError(Exception):
    """Base exception class for Greenhouse Gateway"""
    pass

class ConfigurationError(GreenhouseGatewayError):
    """Raised when there are issues with configuration"""
    pass

class InitializationError(GreenhouseGatewayError):
    """Raised when component initialization fails"""
    pass

class UpstreamError(GreenhouseGatewayError):
    """Raised when the IoT platform rejects or fails a request"""
    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.body = body

class UpstreamHardError(UpstreamError):
    """Non-timeout upstream failure surfaced to the caller"""
    pass

class ProjectNotFoundError(GreenhouseGatewayError):
    """Raised when a project key has no platform settings"""
    pass

class DeviceNotLinkedError(GreenhouseGatewayError):
    """Raised when a greenhouse has no platform device id"""
    pass

class DeviceOfflineError(GreenhouseGatewayError):
    """Raised when the target device failed the liveness check"""
    pass

class DatabaseError(GreenhouseGatewayError):
    """Base exception for database errors"""
    pass

class ConnectionPoolError(DatabaseError):
    """Exception for connection pool related errors"""
    pass
