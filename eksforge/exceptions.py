"""
Error taxonomy for cluster creation
Configuration and validation errors abort before any side effect,
provisioning/readiness/cancellation errors abort after side effects began
"""

from typing import Iterable, List, Optional


class EksforgeError(Exception):
    """Base class for every fatal error surfaced by eksforge"""

    recommendation: Optional[str] = None

    def __init__(self, message: str, recommendation: Optional[str] = None):
        super().__init__(message)
        if recommendation is not None:
            self.recommendation = recommendation


class ConfigurationConflict(EksforgeError):
    """Two mutually exclusive inputs were both given"""


class IncompatibleConfiguration(ConfigurationConflict):
    """A flag-only option was set together with --config-file"""

    def __init__(self, option: str):
        self.option = option
        super().__init__(f"cannot use --{option} when --config-file/-f is set")


class NamingConflict(ConfigurationConflict):
    def __init__(self, flag_value: str, arg_value: str):
        self.flag_value = flag_value
        self.arg_value = arg_value
        super().__init__(
            f"--name={flag_value} and argument {arg_value} cannot be used at the same time"
        )


class ValidationError(EksforgeError):
    """Missing required field, unsupported region/version and the like"""


class DecodeError(ValidationError):
    pass


class KindMismatch(DecodeError):
    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"decoded object of wrong type: expected {expected}, got {actual}")


class InsufficientSubnets(ValidationError):
    pass


class ProvisioningError(EksforgeError):
    """Infrastructure creation reported one or more errors"""

    def __init__(self, cluster_name: str, errors: Iterable[str], recommendation: Optional[str] = None):
        self.errors: List[str] = list(errors)
        super().__init__(f"failed to create cluster {cluster_name!r}", recommendation)


class ReadinessTimeout(EksforgeError):
    def __init__(self, what: str, timeout: float, recommendation: Optional[str] = None):
        self.what = what
        self.timeout = timeout
        super().__init__(f"timed out after {timeout:.0f}s waiting for {what}", recommendation)


class CancellationError(EksforgeError):
    """Operator aborted the run while a wait was in progress"""

    def __init__(self, what: str, recommendation: Optional[str] = None):
        self.what = what
        super().__init__(f"cancelled while waiting for {what}", recommendation)


class KubeconfigError(EksforgeError):
    """The kubeconfig file could not be read or written"""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(
            f"unable to write kubeconfig {path!r}: {reason}",
            recommendation="fix the file or choose another one with --kubeconfig, "
                           "or skip writing it with --write-kubeconfig=false",
        )
