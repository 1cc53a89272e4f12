"""
Exception hierarchy for MsgRelay.

Permanent dispatch errors describe problems that retrying will not fix
(missing or disabled platform configuration, unreadable credentials). They
are recorded against a single target and never abort the rest of a job.
"""


class MsgRelayError(Exception):
    """Base class for all MsgRelay errors."""


class DispatchError(MsgRelayError):
    """Error raised while delivering to a single target."""


class PermanentDispatchError(DispatchError):
    """A target failure that a retry cannot resolve."""


class PlatformNotFoundError(PermanentDispatchError):
    """Platform configuration is missing or belongs to another tenant."""


class PlatformInactiveError(PermanentDispatchError):
    """Platform configuration exists but is disabled."""


class CredentialsError(PermanentDispatchError):
    """Stored credentials could not be decrypted or parsed."""


class ProviderNotFoundError(PermanentDispatchError):
    """No provider is registered for the platform type."""


class EncryptionKeyError(MsgRelayError):
    """The process-wide encryption key is missing or malformed."""


class UnsafeUrlError(MsgRelayError, ValueError):
    """A destination URL was rejected by the SSRF policy."""


class JobNotFoundError(MsgRelayError):
    """The requested dispatch job does not exist."""


class JobStateError(MsgRelayError):
    """The dispatch job is not in a state that allows the operation."""
