from __future__ import annotations


class OrchestratorError(Exception):
    """Base for errors that map onto an HTTP status and a caller-safe message."""

    status_code = 500

    def __init__(self, message: str, *, public_message: str | None = None):
        super().__init__(message)
        self.public_message = public_message or message


class ValidationError(OrchestratorError):
    status_code = 400


class PartialApprovalError(ValidationError):
    def __init__(self, missing_ids: list[str]):
        super().__init__(
            f"Missing approval decisions for: {', '.join(sorted(missing_ids))}",
            public_message="A decision is required for every outstanding approval request",
        )
        self.missing_ids = sorted(missing_ids)


class AuthenticationError(OrchestratorError):
    status_code = 401


class InsufficientCredits(OrchestratorError):
    status_code = 402

    def __init__(self, organization_id: str, balance: int):
        super().__init__(
            f"Organization {organization_id} has insufficient credits (balance={balance})",
            public_message="Insufficient credits for agent mode",
        )
        self.organization_id = organization_id
        self.balance = balance


class ApprovalAlreadyResolvedError(OrchestratorError):
    status_code = 409

    def __init__(self, context_id: str):
        super().__init__(
            f"Pending approval context {context_id} was already resolved",
            public_message="These approval requests have already been resolved",
        )
        self.context_id = context_id


class ProviderError(OrchestratorError):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message, public_message="The assistant is currently unavailable")


class ProviderTimeoutError(ProviderError):
    status_code = 504

    def __init__(self, timeout_seconds: float):
        OrchestratorError.__init__(
            self,
            f"Capability provider did not finish within {timeout_seconds:g}s",
            public_message="The assistant took too long to respond",
        )
        self.timeout_seconds = timeout_seconds


class PersistenceError(OrchestratorError):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message, public_message="Unable to save the conversation")
