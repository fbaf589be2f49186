from pydantic import BaseModel, Field


class GenerationOptions(BaseModel):
    """Sampling configuration. Unset fields fall back to server defaults."""

    temperature: float | None = Field(default=None, ge=0, le=2)
    top_p: float | None = Field(default=None, ge=0, le=1)
    top_k: int | None = Field(default=None, ge=1)
    max_tokens: int | None = Field(default=None, ge=1)
    stop: list[str] | None = None
    stream: bool = False

    def to_ollama_options(self) -> dict:
        """Render the sampling fields as an Ollama `options` object."""
        options = self.model_dump(exclude_none=True, exclude={"stream", "max_tokens"})
        if self.max_tokens is not None:
            options["num_predict"] = self.max_tokens
        return options


# Preset used for single-image analysis
ANALYZE_OPTIONS = GenerationOptions(temperature=0.3, max_tokens=1024)
