class EmailQueueError(Exception):
    """Base class for errors raised by the email queue."""


class ValidationError(EmailQueueError):
    """Enqueue request is malformed or incomplete. Nothing was persisted."""


class PersistenceError(EmailQueueError):
    """The record store is unavailable or rejected a write."""


class NotFoundError(EmailQueueError):
    def __init__(self, email_id: str):
        super().__init__(f"Email {email_id} not found")
        self.email_id = email_id


class TransportUnavailable(EmailQueueError):
    """No send could be made at all. Never counted as a delivery attempt."""


class DeliveryRejected(EmailQueueError):
    """The transport was reached but the send did not succeed.

    ``transient`` marks provider-side trouble (timeouts, 5xx, dropped
    connections) as opposed to a rejection of this particular message.
    """

    def __init__(self, reason: str, transient: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.transient = transient
