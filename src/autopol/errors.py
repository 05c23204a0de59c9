# src/autopol/errors.py
"""
Exception types raised by autopol.
"""


class AutopolError(Exception):
    """Base class for autopol errors"""


class PolicyFormatError(AutopolError, ValueError):
    """A canonical policy document cannot be decoded"""


class FlowStreamError(AutopolError):
    """The flow stream failed and cannot continue"""

    def __init__(self, message: str, returncode: int = None):
        super().__init__(message)
        self.returncode = returncode


class ConfigError(AutopolError):
    """Configuration file or overrides are invalid"""
