"""
Custom exception classes for the HELR-Verify system.

This module defines the error taxonomy of the encrypted matching protocol.
Every exception carries a human-readable message, a context dictionary and
an error code so callers can log failures as structured events and decide
whether a failure is an operator-visible setup problem or a per-request
verification failure.
"""

from typing import Optional, Dict, Any


class HelrVerifyError(Exception):
    """
    Base exception class for all HELR-Verify errors.

    Parameters
    ----------
    message : str
        Human-readable error message.
    context : dict, optional
        Additional context information about the error.
    error_code : str, optional
        Unique error code for programmatic handling.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.error_code = error_code
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return a formatted string representation of the error."""
        parts = [self.message]

        if self.error_code:
            parts.append(f"[Error Code: {self.error_code}]")

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"[Context: {context_str}]")

        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the exception to a dictionary for structured logging.

        Returns
        -------
        dict
            Dictionary representation of the exception.
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class MalformedInputError(HelrVerifyError):
    """
    Exception raised for missing or unparseable classifier inputs.

    This covers score tables, quantization bins and raw feature datasets, as
    well as structurally inconsistent inputs such as ragged tables or a probe
    whose length does not match the number of compiled features. It is a
    setup failure that the operator can fix, never a runtime security event.
    """

    def __init__(
        self,
        message: str,
        file_path: Optional[str] = None,
        **kwargs,
    ) -> None:
        context = kwargs.get("context", {})
        if file_path:
            context["file_path"] = file_path

        super().__init__(message, context, kwargs.get("error_code", "INPUT_001"))


class TableNotFoundError(MalformedInputError):
    """Exception raised when a required table, bins or dataset file is absent."""

    def __init__(self, file_path: str, table_type: str = "unknown") -> None:
        message = f"Classifier input not found: {file_path}"
        context = {"table_type": table_type}
        super().__init__(
            message, file_path=file_path, context=context, error_code="INPUT_002"
        )


class DomainViolationError(HelrVerifyError):
    """
    Exception raised when a code falls outside a compiled table's range.

    A probe code that a compiled lookup does not cover would silently score
    as digit zero if evaluated, corrupting the match score without any
    signal. Such codes are rejected before encryption instead.
    """

    def __init__(
        self,
        message: str,
        feature_index: Optional[int] = None,
        code: Optional[int] = None,
        domain_size: Optional[int] = None,
        **kwargs,
    ) -> None:
        context = kwargs.get("context", {})
        if feature_index is not None:
            context["feature_index"] = feature_index
        if code is not None:
            context["code"] = code
        if domain_size is not None:
            context["domain_size"] = domain_size

        super().__init__(message, context, kwargs.get("error_code", "DOMAIN_001"))


class EngineFailureError(HelrVerifyError):
    """
    Exception raised for any fault of the homomorphic evaluation engine.

    Engine faults are fatal to the single authentication in which they occur.
    All engine operations are pure functions of ciphertexts and keys, so a
    caller may retry, but the protocol itself never does.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        strategy: Optional[str] = None,
        **kwargs,
    ) -> None:
        context = kwargs.get("context", {})
        if operation:
            context["engine_operation"] = operation
        if strategy:
            context["strategy"] = strategy

        super().__init__(message, context, kwargs.get("error_code", "ENGINE_001"))


class ConfigurationError(HelrVerifyError):
    """
    Exception raised for configuration-related errors.

    This includes invalid MatchConfiguration values, unknown presets or
    strategies, and engine parameter sets that cannot host the requested
    radix decomposition.
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[Any] = None,
        **kwargs,
    ) -> None:
        context = kwargs.get("context", {})
        if config_key:
            context["config_key"] = config_key
        if config_value is not None:
            context["config_value"] = config_value

        super().__init__(message, context, kwargs.get("error_code", "CONFIG_001"))


class BenchmarkError(HelrVerifyError):
    """Exception raised when a strategy benchmark cannot produce any measurement."""

    def __init__(self, message: str, strategy: str, **kwargs) -> None:
        context = {"strategy": strategy}
        super().__init__(message, context, kwargs.get("error_code", "BENCH_001"))
