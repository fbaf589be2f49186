"""In-process fake Ollama server for tests.

Run standalone: uvicorn tests.mocks.fake_ollama:app --port 11434
"""

import copy
import json

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

app = FastAPI(title="Fake Ollama")

BASE_URL = "http://fake-ollama"
UNREACHABLE_URL = "http://127.0.0.1:19999"

VERSION = "0.5.7"
STREAM_TOKENS = ["The", " screen", " shows", " a", " login", " form", "."]
EMBEDDING_DIM = 768

_INITIAL_MODELS = [
    {
        "name": "llava:13b",
        "model": "llava:13b",
        "modified_at": "2024-05-01T10:22:33.123456789-07:00",
        "size": 8011256494,
        "digest": "0d0eb4d7f485d7d0a21fd9b0c1d5b04da481d2150a097e81b64acb59758fdef6",
        "details": {"family": "llama", "parameter_size": "13B", "quantization_level": "Q4_0", "format": "gguf"},
    },
    {
        "name": "nomic-embed-text:latest",
        "model": "nomic-embed-text:latest",
        "modified_at": "2024-04-12T08:00:00Z",
        "size": 274302450,
        "digest": "0a109f422b47e3a30ba2b10eca18548e944e8a23073ee3f3e947efcf3c45e59f",
        "details": {"family": "nomic-bert", "parameter_size": "137M", "quantization_level": "F16", "format": "gguf"},
    },
    {
        "name": "codellama:7b",
        "model": "codellama:7b",
        "modified_at": "2024-03-02T17:45:10Z",
        "size": 3825910662,
        "digest": "8fdf8f752f6e80de33e82f381aba784c025982752cd1ae9377add66449d2225f",
        "details": {"family": "llama", "parameter_size": "7B", "quantization_level": "Q4_0", "format": "gguf"},
    },
]

# Models the fake registry can download, and their layer sizes
_REGISTRY = {
    "moondream:latest": [("sha256:aaa", 100), ("sha256:bbb", 50)],
}

state: dict = {}
requests_seen: list[dict] = []


def reset_state() -> None:
    state["models"] = copy.deepcopy(_INITIAL_MODELS)
    requests_seen.clear()


reset_state()


def _find(name: str) -> dict | None:
    if ":" not in name:
        name = f"{name}:latest"
    return next((m for m in state["models"] if m["name"] == name), None)



def _not_found(name: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": f"model '{name}' not found"})


def _ndjson(events):
    async def generate():
        for event in events:
            yield json.dumps(event) + "\n"

    return StreamingResponse(generate(), media_type="application/x-ndjson")


@app.get("/api/version")
async def version():
    return {"version": VERSION}


@app.get("/api/tags")
async def tags():
    return {"models": state["models"]}


@app.get("/api/ps")
async def ps():
    return {"models": [state["models"][0]] if state["models"] else []}


class _NameRequest(BaseModel):
    name: str
    stream: bool = False


@app.post("/api/show")
async def show(request: _NameRequest):
    model = _find(request.name)
    if model is None:
        return _not_found(request.name)
    return {
        "modelfile": f"FROM {request.name}",
        "parameters": "stop \"<|im_end|>\"",
        "template": "{{ .Prompt }}",
        "details": model["details"],
        "model_info": {"general.architecture": model["details"]["family"], "llama.context_length": 4096},
    }


@app.post("/api/pull")
async def pull(request: _NameRequest):
    layers = _REGISTRY.get(request.name)
    if layers is None:
        return _ndjson([
            {"status": "pulling manifest"},
            {"error": "pull model manifest: file does not exist"},
        ])

    events: list[dict] = [{"status": "pulling manifest"}]
    for digest, total in layers:
        for completed in (0, total // 4, total // 2, total // 2, total):
            events.append({"status": f"pulling {digest[7:]}", "digest": digest, "total": total, "completed": completed})
    events += [
        {"status": "verifying sha256 digest"},
        {"status": "writing manifest"},
        {"status": "success"},
    ]
    state["models"].append({
        "name": request.name,
        "model": request.name,
        "modified_at": "2024-06-01T00:00:00Z",
        "size": sum(total for _, total in layers),
        "digest": "f" * 64,
        "details": {"family": "phi2", "parameter_size": "1.4B", "quantization_level": "Q4_0", "format": "gguf"},
    })
    return _ndjson(events)


@app.delete("/api/delete")
async def delete(request: _NameRequest):
    model = _find(request.name)
    if model is None:
        return _not_found(request.name)
    state["models"].remove(model)
    return JSONResponse(status_code=200, content=None)


@app.post("/api/generate")
async def generate(request: Request):
    body = await request.json()
    requests_seen.append(body)
    model = body.get("model", "")
    if _find(model) is None:
        return _not_found(model)
    if body.get("prompt") == "explode":
        return JSONResponse(status_code=500, content={"error": "llama runner process has terminated"})

    if body.get("stream", True):
        events = [{"model": model, "response": token, "done": False} for token in STREAM_TOKENS]
        events.append({"model": model, "response": "", "done": True, "eval_count": len(STREAM_TOKENS)})
        if body.get("prompt") == "after-done":
            events.append({"model": model, "response": " ignored", "done": False})
        if body.get("prompt") == "fail-midway":
            events = events[:2] + [{"error": "out of memory"}]
        return _ndjson(events)

    return {"model": model, "response": "".join(STREAM_TOKENS), "done": True}


@app.post("/api/chat")
async def chat(request: Request):
    body = await request.json()
    requests_seen.append(body)
    model = body.get("model", "")
    if _find(model) is None:
        return _not_found(model)

    last = body["messages"][-1]["content"] if body.get("messages") else ""
    reply = f"You said: {last}"

    if body.get("stream", True):
        words = reply.split(" ")
        events = [
            {"model": model, "message": {"role": "assistant", "content": w if i == 0 else " " + w}, "done": False}
            for i, w in enumerate(words)
        ]
        events.append({"model": model, "message": {"role": "assistant", "content": ""}, "done": True})
        return _ndjson(events)

    return {"model": model, "message": {"role": "assistant", "content": reply}, "done": True}


@app.post("/api/embeddings")
async def embeddings(request: Request):
    body = await request.json()
    model = body.get("model", "")
    if _find(model) is None:
        return _not_found(model)
    if model.startswith("codellama"):
        return {}
    return {"embedding": [0.1] * EMBEDDING_DIM}
