from pydantic import BaseModel, ConfigDict, computed_field


class ModelDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    size: int = 0
    digest: str = ""
    modified_at: str = ""
    family: str | None = None
    parameter_size: str | None = None
    quantization_level: str | None = None


class ServerStatus(BaseModel):
    running: bool
    version: str | None = None
    models_loaded: list[str] = []


class PullProgress(BaseModel):
    """A single event from a streaming model pull."""

    status: str = ""
    digest: str | None = None
    total: int | None = None
    completed: int | None = None

    @computed_field
    @property
    def fraction(self) -> float | None:
        if not self.total or self.completed is None:
            return None
        return min(max(self.completed / self.total, 0.0), 1.0)
