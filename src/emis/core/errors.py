"""Custom exception hierarchy for the EMIS platform."""


class EmisError(Exception):
    """Base exception for all platform errors."""


# --- Configuration ---
class ConfigError(EmisError):
    """Invalid or missing configuration, or wiring changed after startup."""


# --- Tenancy ---
class TenancyError(EmisError):
    """Tenant context problem."""


class TenantContextUnavailable(TenancyError):
    """No tenant is bound to the current operation."""


class TenantMismatchError(TenancyError):
    """Two tenant identifiers that must agree do not."""


# --- Event contracts ---
class EventContractError(EmisError):
    """Integration event could not be built, resolved, or decoded."""


class TranslationError(EventContractError):
    """Domain event could not be mapped to a valid integration event."""


class DeserializationError(EventContractError):
    """Inbound broker message could not be decoded to a typed event."""


class UnregisteredEventType(EventContractError):
    """Event type has no static topic binding."""


# --- Transport ---
class TransportError(EmisError):
    """Broker unreachable or message could not be serialized for sending.

    Always retryable from the caller's point of view.
    """

    retryable = True


# --- Consumer handlers ---
class HandlerError(EmisError):
    """Raised by integration event handlers to classify a failure."""


class RetryableHandlerError(HandlerError):
    """Transient failure; the message should be redelivered."""


class PermanentHandlerError(HandlerError):
    """Failure that will never succeed on redelivery."""


class InvalidTransitionError(EmisError):
    """Message lifecycle transition not permitted."""


# --- Domain ---
class DomainError(EmisError):
    """Business rule or lookup failure inside a service."""


class BusinessRuleViolation(DomainError):
    """Command rejected by an aggregate invariant."""


class NotFoundError(DomainError):
    """Requested aggregate does not exist in the current tenant."""
