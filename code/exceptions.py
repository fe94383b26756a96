"""Custom exceptions for the layer combination engine."""


class LayerEngineError(Exception):
    """Base exception class for layer engine errors.

    Attributes:
        code (str): Error code for identifying the error type
        message (str): Descriptive error message
        details (dict): Additional error context and details
    """

    def __init__(self, message: str, code: str = "ENGINE_ERR", details: dict | None = None):
        """Initialize the base engine error.

        Args:
            message: Human-readable error description
            code: Error code for identification and handling
            details: Additional context about the error
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        """Format the error message with code and details."""
        error_msg = f"[{self.code}] {self.message}"
        if self.details:
            error_msg += f"\nDetails: {self.details}"
        return error_msg


# Catalog Exceptions
class CatalogValidationError(LayerEngineError):
    """Raised when a catalog edit is rejected (empty name, no items, unknown ids).

    No catalog state is mutated when this is raised.
    """

    def __init__(self, message: str, code: str = "CATALOG_INVALID", details: dict | None = None):
        super().__init__(message, code=code, details=details)


class LayerNotFoundError(CatalogValidationError):
    """Raised when a layer id does not exist in the catalog."""

    def __init__(self, layer_id: int, details: dict | None = None):
        """Initialize layer not found error.

        Args:
            layer_id: The unknown layer id
            details: Additional context
        """
        message = f"Layer not found: {layer_id}"
        super().__init__(message, code="LAYER_NOT_FOUND", details=details)


class ItemNotFoundError(CatalogValidationError):
    """Raised when an item id does not exist in the given layer."""

    def __init__(self, layer_id: int, item_id: int, details: dict | None = None):
        message = f"Item {item_id} not found in layer {layer_id}"
        super().__init__(message, code="ITEM_NOT_FOUND", details=details)


# Rule Exceptions
class RuleValidationError(LayerEngineError):
    """Raised when a matching rule, exclusion rule or manual mapping is malformed.

    Exclusion rules must be either property-based or a specific item pair,
    never both and never neither.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, code="RULE_INVALID", details=details)


# Project Exceptions
class ProjectImportError(LayerEngineError):
    """Raised when a project document cannot be parsed or validated."""

    def __init__(self, message: str = "The selected file is not a valid project file", details: dict | None = None):
        super().__init__(message, code="PROJECT_IMPORT", details=details)


class ProjectExportError(LayerEngineError):
    """Raised when exporting an empty project."""

    def __init__(self, message: str = "Project is empty; add some layers first", details: dict | None = None):
        super().__init__(message, code="PROJECT_EXPORT", details=details)


# Generation Exceptions
class GenerationCancelled(LayerEngineError):
    """Raised when the cancel signal trips during generation or export.

    This is not a failure: every combination accepted before the signal
    tripped stays committed to the generation context.
    """

    def __init__(self, message: str = "Generation cancelled", details: dict | None = None):
        super().__init__(message, code="CANCELLED", details=details)


# Session Exceptions
class SessionError(LayerEngineError):
    """Base class for batch/session manager errors."""

    def __init__(self, message: str, code: str = "SESSION_ERR", details: dict | None = None):
        super().__init__(message, code=code, details=details)


class NoSessionError(SessionError):
    """Raised when a session operation is requested but no session is active."""

    def __init__(self, details: dict | None = None):
        super().__init__("No active export session", code="NO_SESSION", details=details)


class InvalidSessionTransition(SessionError):
    """Raised when a status change is not allowed from the current status."""

    def __init__(self, current: str, target: str, details: dict | None = None):
        message = f"Cannot move export session from '{current}' to '{target}'"
        super().__init__(message, code="BAD_TRANSITION", details=details)


class SessionBusyError(SessionError):
    """Raised when a generate/download call arrives while another one is in flight."""

    def __init__(self, operation: str, details: dict | None = None):
        message = f"Another {operation} operation is already running"
        super().__init__(message, code="SESSION_BUSY", details=details)


# Export Exceptions
class ExportValidationError(LayerEngineError):
    """Raised when an export request is rejected before any state is touched."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, code="EXPORT_INVALID", details=details)
