# src/iot_hub/utils/exceptions.py

class IoTHubError(Exception):
    """Base exception class for IoT Hub"""
    pass

class ConfigurationError(IoTHubError):
    """Raised when there are issues with configuration"""
    pass

class InitializationError(IoTHubError):
    """Raised when component initialization fails"""
    pass

class CommunicationError(IoTHubError):
    """Raised when communication with external services fails"""
    pass

class NotConnectedError(CommunicationError):
    """Raised when a publish is attempted while the broker connection is down"""
    pass

class AuthenticationError(IoTHubError):
    """Raised when a subscriber credential is missing or cannot be verified"""
    def __init__(self, message: str, reason: str = "invalid"):
        super().__init__(message)
        self.reason = reason

class DatabaseError(Exception):
    """Base exception for database errors"""
    pass

class ConnectionPoolError(DatabaseError):
    """Exception for connection pool related errors"""
    pass
