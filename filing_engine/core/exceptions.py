"""
Regulatory Filing Platform
Service-layer exceptions.

Services raise these; ``register_error_handlers`` in the blueprints package
turns any FilingPlatformError into ``jsonify(err.payload()), err.http_status``.

    NotFoundError        404   missing record, or one owned by another tenant
    ValidationError      422   input violates a business rule
    ValidationFailed     422   filing form data failed its rule set
    PreconditionFailed   409   entity is in the wrong state for the action

Regulator rejections and automated-step failures are ordinary outcomes:
they are recorded on the filing / execution (kinds GATEWAY_REJECTED and
EXECUTOR_FAILED below) and never raised.

Usage:
    raise NotFoundError(resource="Filing", resource_id=filing_id, tenant_id=tenant_id)
    raise PreconditionFailed("Filing is already filed", current_state="filed")
"""

GATEWAY_REJECTED = "gateway_rejected"
EXECUTOR_FAILED = "executor_failed"


class FilingPlatformError(Exception):
    http_status = 500

    def payload(self) -> dict:
        return {"error": str(self)}


class NotFoundError(FilingPlatformError):
    """A lookup that found nothing within the caller's tenant scope.

    Cross-tenant hits are reported the same way, so the response never
    confirms that another tenant's record exists. ``tenant_id`` appears in
    the message for logs only; the HTTP payload carries the resource name.
    """

    http_status = 404

    def __init__(self, resource: str, resource_id: int | str | None = None,
                 tenant_id: int | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        where = f" id={resource_id}" if resource_id is not None else ""
        scope = f" (tenant={tenant_id})" if tenant_id is not None else ""
        super().__init__(f"{resource}{where} not found{scope}")

    def payload(self) -> dict:
        where = f" id={self.resource_id}" if self.resource_id is not None else ""
        return {"error": f"{self.resource}{where} not found", "resource": self.resource}


class ValidationError(FilingPlatformError):
    """Well-formed input that breaks a business rule (unknown form type,
    cyclic step graph, missing required field)."""

    http_status = 422

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    def payload(self) -> dict:
        return {"error": str(self), "details": self.details}


class ValidationFailed(ValidationError):
    """The filing's form data has blocking errors.

    Carries the whole ValidationResult so the caller sees every violation
    in one response.
    """

    def __init__(self, result, filing_id: str | None = None) -> None:
        self.result = result
        self.filing_id = filing_id
        super().__init__(
            f"Filing validation failed with {len(result.errors)} error(s)",
            details={"errors": [e.to_dict() for e in result.errors]},
        )

    def payload(self) -> dict:
        return {"error": str(self), "filing_id": self.filing_id,
                "validation": self.result.to_dict()}


class PreconditionFailed(FilingPlatformError):
    """The action is valid in general but not in the entity's current state
    (submitting a filed filing, completing a step whose dependencies are open)."""

    http_status = 409

    def __init__(self, message: str, current_state: str | None = None) -> None:
        self.current_state = current_state
        super().__init__(message)

    def payload(self) -> dict:
        return {"error": str(self), "current_state": self.current_state}
