class InferenceError(Exception):
    """Base exception for local inference client errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status: int = 500,
        details: dict | None = None,
    ):
        self.code = code
        self.message = message
        self.status = status
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        result = {
            "error": {
                "code": self.code,
                "message": self.message,
                "status": self.status,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result


# ── Transport errors: the request never got a usable answer ─────────────────


class TransportError(InferenceError):
    def __init__(self, code: str = "transport_error", message: str = "Transport failure.", details: dict | None = None):
        super().__init__(code=code, message=message, status=503, details=details)


class BackendUnavailableError(TransportError):
    def __init__(self, message: str = "Local inference server is unavailable.", details: dict | None = None):
        super().__init__(
            code="backend_unavailable",
            message=message,
            details=details or {"suggestion": "Make sure Ollama is running (`ollama serve`)."},
        )


class MalformedResponseError(TransportError):
    def __init__(self, message: str = "Inference server returned an unexpected response.", details: dict | None = None):
        super().__init__(code="malformed_response", message=message, details=details)


# ── Server errors: the server answered and declined ─────────────────────────


class ServerError(InferenceError):
    def __init__(self, message: str = "Inference server rejected the request.", status: int = 500, details: dict | None = None, code: str = "server_error"):
        super().__init__(code=code, message=message, status=status, details=details)


class NotFoundError(ServerError):
    def __init__(self, message: str = "Model not found.", details: dict | None = None):
        super().__init__(code="not_found", message=message, status=404, details=details)


class GenerationError(ServerError):
    def __init__(self, message: str = "Generation failed.", status: int = 500, details: dict | None = None):
        super().__init__(code="generation_failed", message=message, status=status, details=details)
