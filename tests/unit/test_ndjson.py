import base64

import httpx

from phantom_inference.services.inference.ndjson import encode_image, iter_ndjson, supports_vision


class TestSupportsVision:
    def test_vision_models(self):
        for name in ("llava:13b", "bakllava", "qwen2-vl:7b", "llava-llama3:8b", "moondream:latest"):
            assert supports_vision(name) is True

    def test_case_insensitive(self):
        assert supports_vision("LLaVA:7B") is True

    def test_text_models(self):
        for name in ("codellama:7b", "llama3:8b", "nomic-embed-text"):
            assert supports_vision(name) is False


class TestEncodeImage:
    def test_strips_data_url_prefix(self):
        assert encode_image("data:image/png;base64,iVBORw0KGgo=") == "iVBORw0KGgo="

    def test_leaves_plain_base64(self):
        assert encode_image("iVBORw0KGgo=") == "iVBORw0KGgo="

    def test_encodes_bytes(self):
        assert encode_image(b"\x00\x01") == base64.b64encode(b"\x00\x01").decode("ascii")


async def test_iter_ndjson_skips_blank_and_invalid_lines():
    response = httpx.Response(200, content=b'{"a": 1}\n\n[1, 2]\nnope\n{"b": 2}\n')
    events = [e async for e in iter_ndjson(response)]
    assert events == [{"a": 1}, {"b": 2}]


async def test_iter_ndjson_last_line_without_newline():
    response = httpx.Response(200, content=b'{"a": 1}\n{"done": true}')
    events = [e async for e in iter_ndjson(response)]
    assert events[-1] == {"done": True}
