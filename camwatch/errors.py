from __future__ import annotations

"""Exception hierarchy shared by the reminder and alerting engine."""


class CamwatchError(Exception):
    """Base class for every error raised by camwatch."""


class ConfigurationError(CamwatchError, ValueError):
    """Malformed reminder or rule input; rejected before anything is stored."""


class RuleNotFound(ConfigurationError):
    """Raised when an alert rule id does not exist."""


class TransientExternalError(CamwatchError):
    """Camera, vision or dispatch failure; retried on the next tick or event."""


class CameraUnavailable(TransientExternalError):
    """Camera exists but could not produce a usable snapshot."""


class CameraNotFound(TransientExternalError):
    """No configured camera matches the requested reference."""


class VisionServiceError(TransientExternalError):
    """Vision model request failed (quota, network, bad response)."""


class PersistenceError(CamwatchError):
    """Schedule document could not be written."""


class InvariantViolation(CamwatchError):
    """Internal bug detected; fatal to the current operation only."""
