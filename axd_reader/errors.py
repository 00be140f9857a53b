"""Exceptions raised while reading Analysis Studio XML files.

Document-level errors abort the whole import. PayloadError subclasses only
ever concern a single height map or spectrum, which the readers skip.
"""


class UnsupportedFileType(ValueError):
    """The root element is not an IR 1.0 Analysis Studio document."""


class MalformedDocument(ValueError):
    """The file could not be parsed as XML at all."""


class EmptyResult(ValueError):
    """The document was valid but nothing could be decoded from it."""


class PayloadError(ValueError):
    """A single sample payload could not be decoded."""


class PayloadSizeMismatch(PayloadError):
    """The decoded payload length does not match the declared sample count."""


class InvalidBase64(PayloadError):
    """The payload text is not valid base64."""


class SkippedItemWarning(UserWarning):
    """A height map or spectrum was skipped, the rest of the file was read."""
