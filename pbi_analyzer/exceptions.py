"""Error taxonomy shared by the orchestrators and the HTTP layer."""


class PbiAnalyzerError(Exception):
    """Base class for all domain errors."""


class ValidationError(PbiAnalyzerError):
    """Malformed request; rejected before any job is created."""


class NotFound(PbiAnalyzerError):
    """Unknown identifier."""


class InvalidTransition(PbiAnalyzerError):
    """Lifecycle contract violation, e.g. starting a job twice."""


class SessionAlreadyActive(InvalidTransition):
    """A finding already has a PENDING or RUNNING autofix session."""


class UpstreamError(PbiAnalyzerError):
    """A remote collaborator failed."""


class CatalogUnavailable(UpstreamError):
    """The rule catalog could not be fetched."""


class ModelUnavailable(UpstreamError):
    """The model snapshot could not be retrieved."""


class RemoteExecutionError(UpstreamError):
    """The remote query engine, tool surface or LLM failed."""


class RuleEvaluationError(PbiAnalyzerError):
    """A single rule's expression could not be parsed or evaluated."""

    def __init__(self, rule_id: str, message: str):
        super().__init__(f"Rule {rule_id}: {message}")
        self.rule_id = rule_id
        self.message = message


class StepLimitExceeded(PbiAnalyzerError):
    """The autofix loop produced more steps than allowed."""

    def __init__(self, message: str = "step limit exceeded"):
        super().__init__(message)


class Cancelled(PbiAnalyzerError):
    """A cancellation request was observed at a checkpoint."""

    def __init__(self, message: str = "cancelled"):
        super().__init__(message)
