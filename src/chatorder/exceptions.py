"""
Custom exception classes for chatorder.

Domain errors carry the HTTP status the webhook surface maps them to, so the
exception handlers in main.py stay a single generic function.
"""

from typing import Any, Dict, List, Optional


class ChatOrderError(Exception):
    """
    Base class for domain errors surfaced to webhook callers.

    Attributes:
        message: Explanation of the error
        status_code: HTTP status returned to the caller
    """

    status_code: int = 400

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)

    def details(self) -> Dict[str, Any]:
        """Extra fields merged into the JSON error body."""
        return {}


class TenantNotFound(ChatOrderError):
    """
    Raised when a tenant id or webhook token does not resolve to a tenant.

    Attributes:
        reference: The id, token or phone_number_id that failed to resolve
    """

    status_code = 400

    def __init__(self, reference: Optional[str], message: str = "Tenant not found") -> None:
        self.reference = reference
        super().__init__(message)

    def __str__(self) -> str:
        return f"TenantNotFound(message={self.message})"


class CustomerNotFound(ChatOrderError):
    """
    Raised when an agent response or order references an unknown customer.

    Attributes:
        reference: Customer id or phone used for the lookup
    """

    status_code = 404

    def __init__(self, reference: Optional[str], message: str = "Customer not found") -> None:
        self.reference = reference
        super().__init__(message)

    def __str__(self) -> str:
        return f"CustomerNotFound(message={self.message})"


class ChatNotFound(ChatOrderError):
    """
    Raised when no chat exists for the customer an agent response targets.

    Attributes:
        customer_id: The customer whose chat was looked up
        chat_id: The explicit chat id, if one was supplied
    """

    status_code = 404

    def __init__(
        self,
        customer_id: Optional[str],
        chat_id: Optional[str] = None,
        message: str = "Chat not found",
    ) -> None:
        self.customer_id = customer_id
        self.chat_id = chat_id
        super().__init__(message)

    def __str__(self) -> str:
        return f"ChatNotFound(customer_id={self.customer_id}, chat_id={self.chat_id})"


class InvalidAgentResponse(ChatOrderError):
    """
    Raised when an agent response is neither a send nor an order instruction,
    or a send instruction carries neither text nor media.
    """

    status_code = 400

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid agent response: {reason}")


class OrderValidationError(ChatOrderError):
    """
    Raised when an order instruction fails validation. No rows are written.

    Attributes:
        reason: What was wrong with the instruction
        available_rates: The tenant's configured shipping rates (id, name)
    """

    status_code = 400

    def __init__(
        self,
        reason: str,
        available_rates: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.reason = reason
        self.available_rates = available_rates
        super().__init__(reason)

    def details(self) -> Dict[str, Any]:
        if self.available_rates is None:
            return {}
        return {"available_rates": self.available_rates}

    def __str__(self) -> str:
        return f"OrderValidationError(reason={self.reason})"


class ProviderError(Exception):
    """
    Raised when a WhatsApp provider call (send, media lookup/download) fails.

    Attributes:
        provider: "meta" or "bsp"
        status_code: Provider HTTP status, None for network failures
    """

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        self.message = f"{provider} provider error: {message}"
        super().__init__(self.message)


class ChannelNotConfigured(ProviderError):
    """Raised when a tenant has no credentials for the chat's channel."""

    def __init__(self, tenant_id: str, instance_name: Optional[str] = None) -> None:
        self.tenant_id = tenant_id
        self.instance_name = instance_name
        super().__init__(
            "channel",
            f"no credentials for tenant {tenant_id} (instance={instance_name})",
        )


class AgentInvocationError(Exception):
    """
    Raised when the external agent call fails; the group stays unflushed.

    Attributes:
        group_id: The group whose flush failed
        status_code: Agent HTTP status, None for network failures
    """

    def __init__(
        self,
        group_id: Optional[str],
        message: str,
        status_code: Optional[int] = None,
    ) -> None:
        self.group_id = group_id
        self.status_code = status_code
        self.message = f"Agent invocation failed for group {group_id}: {message}"
        super().__init__(self.message)
