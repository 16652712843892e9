"""Error taxonomy shared by the distribution engine"""


class DistributorError(Exception):
    """Base class for all engine errors"""
    pass


class ConfigurationError(DistributorError):
    """Raised when a destination is missing required settings"""
    pass


class AuthError(DistributorError):
    """Raised when credential exchange or refresh fails"""
    pass


class LoginBlockedError(AuthError):
    """Raised when a source address is rate limited on the ingestion channel"""

    def __init__(self, source: str):
        super().__init__(f"Too many failed login attempts from {source}")
        self.source = source


class UploadError(DistributorError):
    """Raised when a single upload attempt fails"""
    pass


class NotFoundError(DistributorError):
    """Raised when a retry target does not exist"""
    pass


class SourceMissingError(NotFoundError):
    """Raised when the artifact a retry would reuse is gone"""
    pass


class DisabledError(DistributorError):
    """Raised when a retry targets a registered but disabled destination"""
    pass


class StoreUnavailableError(DistributorError):
    """Raised when the record store cannot be opened"""
    pass
