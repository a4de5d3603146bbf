class MailCodecError(Exception):
    """Base class for errors raised by mail_codec."""

    pass


class AttachmentEncodeError(MailCodecError):
    """Raised when an outgoing attachment or inline image cannot be read or encoded."""

    pass


class MimeStructureError(MailCodecError):
    """Raised when an encoded message would violate its own MIME structure."""

    pass


class AttachmentFetchError(MailCodecError):
    """Raised when the provider returns no data for an attachment."""

    pass
