"""
Error taxonomy for the reconciliation engine.

Configuration, transport and embedded-database failures are fatal to the
request or call that raised them. Data-quality findings are reported in a
QualityReport and never raised.
"""


class GlucohubError(Exception):
    """Base class for engine errors."""
    pass


class TimezoneConfigError(GlucohubError, ValueError):
    """Raised for an unknown timezone, an implausible offset or an invalid day string."""
    pass


class TransportError(GlucohubError):
    """Raised when a remote fetch fails or returns a malformed payload."""
    pass


class EmbeddedDatabaseError(GlucohubError):
    """Raised when an uploaded buffer is not a database or references an unknown table/column."""
    pass
