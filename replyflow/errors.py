"""
Exception taxonomy shared by the gateway adapter and the services.

Gateway errors are split by what the caller should do next:

- GatewayUnavailable: transient, try again on the next poll
- GatewayRejected: the gateway refused the request, do not retry blindly
- GatewayNotFound: the remote resource does not exist (or is not ready yet)
- GatewayConflict: the remote state already satisfies the request
"""

from typing import Optional


class ReplyFlowError(Exception):
    """Base class for all Reply Flow errors."""


class GatewayError(ReplyFlowError):
    """Any failure reported by (or while talking to) the messaging gateway."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GatewayUnavailable(GatewayError):
    """Network failure, timeout or 5xx from the gateway."""


class GatewayRejected(GatewayError):
    """4xx from the gateway, e.g. funding denied."""


class GatewayNotFound(GatewayError):
    """404 from the gateway."""


class GatewayConflict(GatewayError):
    """409 from the gateway, e.g. channel already authenticated."""


class NotFoundError(ReplyFlowError):
    """A local channel or session does not exist (or belongs to another tenant)."""


class ProvisioningInProgress(ReplyFlowError):
    """The tenant already has a provisioning attempt in flight."""


class ProvisioningCancelled(ReplyFlowError):
    """A provisioning wait was aborted by the operator."""


class ProvisioningTimeout(ReplyFlowError):
    """The channel did not become ready within the provisioning window."""


class ChannelStateError(ReplyFlowError):
    """The operation does not apply to the channel's current status."""
