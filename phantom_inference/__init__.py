from phantom_inference.services.inference.ollama_client import OllamaClient

__version__ = "0.1.0"

__all__ = ["OllamaClient", "__version__"]
