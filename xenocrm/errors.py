"""
Domain errors raised by the engine modules.
The CLI catches these at the command boundary; nothing below it swallows them.
"""


class XenoCRMError(Exception):
    """Base class for all Xeno CRM errors."""


class InvalidPredicate(XenoCRMError, ValueError):
    """A segmentation rule set names an unknown field or operator, or a bad value."""


class EmptyAudience(XenoCRMError):
    """No customers match the campaign rules; nothing was persisted."""

    def __init__(self, rules=None):
        self.rules = rules
        super().__init__("No customers match the specified rules")


class DuplicateCustomer(XenoCRMError):
    """A customer with the same email already exists."""

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Customer with email {email!r} already exists")


class CampaignNotFound(XenoCRMError):
    def __init__(self, campaign_id: int):
        self.campaign_id = campaign_id
        super().__init__(f"Campaign {campaign_id} not found")


class VendorAcceptFailure(XenoCRMError):
    """The vendor's accept-for-delivery call did not complete (timeout, network, non-2xx)."""

    def __init__(self, message_id, reason: str):
        self.message_id = message_id
        self.reason = reason
        super().__init__(f"Vendor did not accept message {message_id}: {reason}")
