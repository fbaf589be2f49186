import inspect
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import aclosing
from typing import Any

import httpx
import structlog

from phantom_inference.config import settings
from phantom_inference.core.exceptions import (
    BackendUnavailableError,
    GenerationError,
    InferenceError,
    MalformedResponseError,
    NotFoundError,
    ServerError,
)
from phantom_inference.schemas.chat import ChatMessage
from phantom_inference.schemas.generation import ANALYZE_OPTIONS, GenerationOptions
from phantom_inference.schemas.models import ModelDescriptor, PullProgress, ServerStatus
from phantom_inference.services.inference.ndjson import encode_image, iter_ndjson, supports_vision

logger = structlog.get_logger()

ProgressCallback = Callable[[float], Awaitable[None] | None]
TokenCallback = Callable[[str], Awaitable[None] | None]
MessageLike = ChatMessage | dict[str, Any]

_NOT_FOUND_MARKERS = ("not found", "does not exist")
_PULL_FRACTION_CAP = 0.99


def _looks_like_not_found(message: str) -> bool:
    message_lower = message.lower()
    return any(marker in message_lower for marker in _NOT_FOUND_MARKERS)


def _server_message(response: httpx.Response) -> str:
    """Extract the server's error text from a failed response."""
    try:
        data = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return response.reason_phrase


async def _invoke(callback: Callable[[Any], Any], value: Any) -> None:
    """Call a sync or async callback."""
    result = callback(value)
    if inspect.isawaitable(result):
        await result


def _generate_fragment(data: dict) -> str | None:
    return data.get("response") or None


def _chat_fragment(data: dict) -> str | None:
    message = data.get("message")
    if isinstance(message, dict):
        return message.get("content") or None
    return None


async def _mapped(events: AsyncIterator[dict], extract: Callable[[dict], Any]) -> AsyncIterator[Any]:
    """Yield `extract(event)` for each event, skipping None."""
    async with aclosing(events):
        async for data in events:
            value = extract(data)
            if value is not None:
                yield value


class OllamaClient:
    """Async client for a local Ollama server.

    Holds only configuration (base URL, default model, timeout). Every call
    reads that configuration when it builds its request, so changing it
    affects later calls and never a request already dispatched.
    """

    def __init__(
        self,
        base_url: str | None = None,
        default_model: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url or settings.ollama_base_url).rstrip("/")
        self.default_model = default_model or settings.ollama_default_model
        self.embedding_model = settings.ollama_embedding_model
        self._timeout = self._build_timeout(timeout)
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self._timeout)

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self):
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    # ── Configuration ────────────────────────────────────────────────────────

    @staticmethod
    def _build_timeout(read: float | None) -> httpx.Timeout:
        read = settings.phantom_http_read_timeout if read is None else read
        return httpx.Timeout(read, connect=settings.phantom_http_connect_timeout)

    def set_base_url(self, url: str) -> None:
        self.base_url = url.rstrip("/")

    def set_default_model(self, model: str) -> None:
        self.default_model = model

    def set_timeout(self, seconds: float) -> None:
        self._timeout = self._build_timeout(seconds)

    def get_config(self) -> dict:
        return {"base_url": self.base_url, "default_model": self.default_model}

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _resolve_model(self, model: str | None) -> str:
        return model or self.default_model

    # ── Server status & model listing (never raise) ──────────────────────────

    async def _probe_version(self) -> str | None:
        """Return the server version, or None when the server can't be reached."""
        url = self._url("/api/version")
        try:
            response = await self._client.get(url, timeout=self._timeout)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("ollama_unreachable", url=url, error=str(e) or type(e).__name__)
            return None
        version = data.get("version") if isinstance(data, dict) else None
        return version or "unknown"

    async def get_status(self) -> ServerStatus:
        """Report whether the server is up, its version and available models."""
        version = await self._probe_version()
        if version is None:
            return ServerStatus(running=False)
        return ServerStatus(running=True, version=version, models_loaded=await self.list_models())

    async def is_running(self) -> bool:
        return await self._probe_version() is not None

    async def list_models(self) -> list[str]:
        """List model names in the order the server reports them."""
        return [m.name for m in await self.list_model_descriptors()]

    async def list_model_descriptors(self) -> list[ModelDescriptor]:
        url = self._url("/api/tags")
        try:
            response = await self._client.get(url, timeout=self._timeout)
            response.raise_for_status()
            return self._parse_tags(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("ollama_list_models_failed", url=url, error=str(e) or type(e).__name__)
            return []

    async def list_running_models(self) -> list[str]:
        """List models currently resident in server memory (/api/ps)."""
        url = self._url("/api/ps")
        try:
            response = await self._client.get(url, timeout=self._timeout)
            response.raise_for_status()
            return [m.name for m in self._parse_tags(response.json())]
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("ollama_list_running_failed", url=url, error=str(e) or type(e).__name__)
            return []

    @staticmethod
    def _parse_tags(data: Any) -> list[ModelDescriptor]:
        """Parse an Ollama /api/tags (or /api/ps) body into descriptors."""
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object")
        entries = data.get("models") or []
        if not isinstance(entries, list):
            raise ValueError("expected 'models' to be a list")
        models = []
        for m in entries:
            if not isinstance(m, dict):
                raise ValueError(f"unexpected model entry: {m!r}")
            details = m.get("details")
            if not isinstance(details, dict):
                details = {}
            models.append(ModelDescriptor(
                name=m.get("name") or m.get("model", ""),
                size=m.get("size") or 0,
                digest=m.get("digest", ""),
                modified_at=m.get("modified_at", ""),
                family=details.get("family"),
                parameter_size=details.get("parameter_size"),
                quantization_level=details.get("quantization_level"),
            ))
        return models

    # ── Model management ─────────────────────────────────────────────────────

    async def get_model_info(self, name: str) -> dict[str, Any]:
        """Return the server's raw /api/show metadata for a model."""
        return await self._post_json(
            "/api/show", {"name": name}, action="Model lookup", model=name, error_cls=ServerError
        )

    def iter_pull(self, name: str) -> AsyncIterator[PullProgress]:
        """Yield pull events as the server streams them."""
        # Downloads can take far longer than any read timeout
        timeout = httpx.Timeout(None, connect=settings.phantom_http_connect_timeout)
        events = self._stream_ndjson(
            "/api/pull",
            {"name": name, "stream": True},
            action="Model pull",
            model=name,
            error_cls=ServerError,
            timeout=timeout,
        )
        return _mapped(events, PullProgress.model_validate)

    async def pull_model(self, name: str, on_progress: ProgressCallback | None = None) -> bool:
        """Download a model, reporting overall progress as a 0-1 fraction.

        Progress is aggregated across every layer the server reports and is
        only ever reported when it increases. It reaches 1.0 only when the
        server reports success; then True is returned, or False if the
        stream ends first.
        """
        logger.info("model_pull_started", model=name)
        layers: dict[str, tuple[int, int]] = {}
        last_fraction = 0.0

        async with aclosing(self.iter_pull(name)) as events:
            async for event in events:
                if event.total:
                    layers[event.digest or event.status] = (event.completed or 0, event.total)
                if event.status == "success":
                    fraction = 1.0
                elif layers:
                    completed = sum(c for c, _ in layers.values())
                    total = sum(t for _, t in layers.values())
                    # Later layers may not be announced yet; only success is complete.
                    fraction = min(completed / total, _PULL_FRACTION_CAP)
                else:
                    fraction = None

                if fraction is not None and fraction > last_fraction:
                    last_fraction = fraction
                    if on_progress is not None:
                        await _invoke(on_progress, fraction)

                if event.status == "success":
                    logger.info("model_pull_completed", model=name)
                    return True

        logger.warning("model_pull_incomplete", model=name, progress=last_fraction)
        return False

    async def delete_model(self, name: str) -> bool:
        url = self._url("/api/delete")
        try:
            response = await self._client.request("DELETE", url, json={"name": name}, timeout=self._timeout)
        except httpx.TransportError as e:
            raise self._unavailable(e, url, "Model delete") from e
        if response.is_error:
            raise self._server_error(response, model=name, action="Model delete", error_cls=ServerError)
        logger.info("model_deleted", model=name)
        return True

    # ── Generation ───────────────────────────────────────────────────────────

    async def analyze(self, image_data: str | bytes, prompt: str, model: str | None = None) -> str:
        """Describe or interrogate a single image with a vision model."""
        model_name = self._resolve_model(model)
        if not supports_vision(model_name):
            logger.warning("model_may_not_support_vision", model=model_name)
        return await self._generate(
            prompt, model_name, ANALYZE_OPTIONS, images=[image_data], action="Vision analysis"
        )

    async def complete(
        self, prompt: str, model: str | None = None, options: GenerationOptions | None = None
    ) -> str:
        return await self._generate(prompt, self._resolve_model(model), options, action="Text completion")

    async def chat(
        self,
        messages: Iterable[MessageLike],
        model: str | None = None,
        options: GenerationOptions | None = None,
    ) -> str:
        """Send a full conversation and return the assistant's reply."""
        model_name = self._resolve_model(model)
        options = options or GenerationOptions()
        if options.stream:
            return "".join([fragment async for fragment in self.stream_chat(messages, model_name, options)])

        payload = self._chat_payload(messages, model_name, options, stream=False)
        data = await self._post_json("/api/chat", payload, action="Chat completion", model=model_name)
        message = data.get("message") or {}
        if not isinstance(message, dict):
            raise MalformedResponseError("Chat response has no message object.", details={"model": model_name})
        return message.get("content") or ""

    async def stream(
        self,
        prompt: str,
        on_token: TokenCallback,
        model: str | None = None,
        images: list[str | bytes] | None = None,
        options: GenerationOptions | None = None,
    ) -> None:
        """Generate text, calling `on_token` for each fragment as it arrives.

        Returns once the server marks the generation done or closes the
        stream; `on_token` is never called after that.
        """
        async with aclosing(self.iter_stream(prompt, model, images, options)) as fragments:
            async for fragment in fragments:
                await _invoke(on_token, fragment)

    def iter_stream(
        self,
        prompt: str,
        model: str | None = None,
        images: list[str | bytes] | None = None,
        options: GenerationOptions | None = None,
    ) -> AsyncIterator[str]:
        model_name = self._resolve_model(model)
        payload = self._generate_payload(prompt, model_name, options, images, stream=True)
        events = self._stream_ndjson("/api/generate", payload, action="Streaming generation", model=model_name)
        return _mapped(events, _generate_fragment)

    def stream_chat(
        self,
        messages: Iterable[MessageLike],
        model: str | None = None,
        options: GenerationOptions | None = None,
    ) -> AsyncIterator[str]:
        """Yield assistant reply fragments from a streaming chat."""
        model_name = self._resolve_model(model)
        payload = self._chat_payload(messages, model_name, options, stream=True)
        events = self._stream_ndjson("/api/chat", payload, action="Streaming chat", model=model_name)
        return _mapped(events, _chat_fragment)

    async def embed(self, text: str, model: str | None = None) -> list[float]:
        model_name = model or self.embedding_model
        data = await self._post_json(
            "/api/embeddings", {"model": model_name, "prompt": text}, action="Embedding", model=model_name
        )
        embedding = data.get("embedding")
        if not isinstance(embedding, list):
            raise MalformedResponseError(
                "Embedding response did not contain a vector.", details={"model": model_name}
            )
        return [float(v) for v in embedding]

    async def _generate(
        self,
        prompt: str,
        model: str,
        options: GenerationOptions | None,
        images: list[str | bytes] | None = None,
        action: str = "Generation",
    ) -> str:
        if options is not None and options.stream:
            return "".join([fragment async for fragment in self.iter_stream(prompt, model, images, options)])
        payload = self._generate_payload(prompt, model, options, images, stream=False)
        data = await self._post_json("/api/generate", payload, action=action, model=model)
        return data.get("response") or ""

    # ── Payload builders ─────────────────────────────────────────────────────

    @staticmethod
    def _generate_payload(
        prompt: str,
        model: str,
        options: GenerationOptions | None,
        images: list[str | bytes] | None,
        stream: bool,
    ) -> dict:
        payload: dict[str, Any] = {"model": model, "prompt": prompt, "stream": stream}
        if images:
            payload["images"] = [encode_image(image) for image in images]
        ollama_options = options.to_ollama_options() if options else {}
        if ollama_options:
            payload["options"] = ollama_options
        return payload

    @staticmethod
    def _chat_payload(
        messages: Iterable[MessageLike],
        model: str,
        options: GenerationOptions | None,
        stream: bool,
    ) -> dict:
        wire_messages = []
        for raw in messages:
            message = raw if isinstance(raw, ChatMessage) else ChatMessage.model_validate(raw)
            entry: dict[str, Any] = {"role": message.role, "content": message.content}
            if message.images:
                entry["images"] = [encode_image(image) for image in message.images]
            wire_messages.append(entry)

        payload: dict[str, Any] = {"model": model, "messages": wire_messages, "stream": stream}
        ollama_options = options.to_ollama_options() if options else {}
        if ollama_options:
            payload["options"] = ollama_options
        return payload

    # ── Transport ────────────────────────────────────────────────────────────

    async def _post_json(
        self,
        path: str,
        payload: dict,
        *,
        action: str,
        model: str | None = None,
        error_cls: type[ServerError] = GenerationError,
    ) -> dict:
        url = self._url(path)
        logger.debug("ollama_request", url=url, model=model)
        try:
            response = await self._client.post(url, json=payload, timeout=self._timeout)
        except httpx.TransportError as e:
            raise self._unavailable(e, url, action) from e
        if response.is_error:
            raise self._server_error(response, model=model, action=action, error_cls=error_cls)

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{action} returned a body that is not JSON.", details={"url": url, "cause": str(e)}
            ) from e
        if not isinstance(data, dict):
            raise MalformedResponseError(f"{action} returned an unexpected body.", details={"url": url})
        if data.get("error"):
            raise self._error_for(str(data["error"]), response.status_code, model, action, error_cls)
        return data

    def _stream_ndjson(
        self,
        path: str,
        payload: dict,
        *,
        action: str,
        model: str | None = None,
        error_cls: type[ServerError] = GenerationError,
        timeout: httpx.Timeout | None = None,
    ) -> AsyncIterator[dict]:
        """Stream NDJSON events from `path`, resolving the URL and timeout now."""
        return self._ndjson_events(
            self._url(path), payload, action, model, error_cls, timeout or self._timeout
        )

    async def _ndjson_events(
        self,
        url: str,
        payload: dict,
        action: str,
        model: str | None,
        error_cls: type[ServerError],
        timeout: httpx.Timeout,
    ) -> AsyncIterator[dict]:
        """Yield NDJSON events until the server marks the stream done."""
        logger.debug("ollama_stream_request", url=url, model=model)
        try:
            async with self._client.stream(
                "POST", url, json=payload, timeout=timeout
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise self._server_error(response, model=model, action=action, error_cls=error_cls)
                async for data in iter_ndjson(response):
                    if data.get("error"):
                        raise self._error_for(str(data["error"]), response.status_code, model, action, error_cls)
                    yield data
                    if data.get("done"):
                        return
        except httpx.TransportError as e:
            raise self._unavailable(e, url, action) from e

    # ── Error mapping ────────────────────────────────────────────────────────

    @staticmethod
    def _unavailable(exc: httpx.TransportError, url: str, action: str) -> BackendUnavailableError:
        cause = str(exc) or type(exc).__name__
        if isinstance(exc, httpx.TimeoutException):
            message = f"{action} timed out waiting for {url}."
        elif isinstance(exc, httpx.ConnectError):
            message = f"Cannot connect to inference server at {url}. Is Ollama running?"
        else:
            message = f"{action} failed: connection to {url} broke ({cause})."
        logger.warning("ollama_transport_error", url=url, action=action, error=cause)
        return BackendUnavailableError(message, details={"url": url, "cause": cause})

    def _server_error(
        self,
        response: httpx.Response,
        *,
        model: str | None,
        action: str,
        error_cls: type[ServerError] = GenerationError,
    ) -> InferenceError:
        return self._error_for(_server_message(response), response.status_code, model, action, error_cls)

    @staticmethod
    def _error_for(
        message: str,
        status_code: int,
        model: str | None,
        action: str,
        error_cls: type[ServerError],
    ) -> InferenceError:
        details: dict[str, Any] = {"status_code": status_code, "cause": message}
        if model:
            details["model"] = model
        # Generation failures can mention "not found" for reasons other than the model
        text_says_missing = not issubclass(error_cls, GenerationError) and _looks_like_not_found(message)
        if status_code == 404 or text_says_missing:
            logger.info("ollama_model_not_found", model=model, action=action)
            return NotFoundError(f"Model '{model}' not found: {message}" if model else message, details=details)
        logger.warning("ollama_server_error", model=model, action=action, status_code=status_code, error=message)
        status = status_code if status_code >= 400 else 500
        return error_cls(f"{action} failed: {message}", status=status, details=details)
