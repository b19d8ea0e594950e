from __future__ import annotations


class BillingError(Exception):
    """Base class for reconciliation errors surfaced to the event caller."""


class UnmappableEventError(BillingError):
    """
    A plan-bearing event whose plan or owner cannot be determined.

    The caller marks the webhook event failed so a later redelivery can
    retry once the missing linkage exists.
    """


class AccountResolutionError(UnmappableEventError):
    """No billing account matched and no user id is available to create one."""


class WebhookSignatureError(BillingError):
    """The inbound webhook payload failed signature verification."""


class WebhookConfigurationError(BillingError):
    """The webhook endpoint is missing configuration it needs to verify events."""
