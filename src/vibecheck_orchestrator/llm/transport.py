"""Gemini REST transport for text and image generation."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol
from urllib import error, parse, request

from pydantic import BaseModel, ConfigDict

from vibecheck_orchestrator.errors import TransportError

logger = logging.getLogger(__name__)

SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
    "HARM_CATEGORY_HARASSMENT",
)


class GenerateRequest(BaseModel):
    """One remote generate call."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    model: str
    prompt: str
    system_instruction: str | None = None
    # data URI, e.g. "data:image/png;base64,..."
    prompt_image: str | None = None
    image_output: bool = False
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    response_schema: dict[str, Any] | None = None
    tools: list[dict[str, Any]] | None = None


class GenerationResult(BaseModel):
    """Normalized model response."""

    text: str
    grounding_metadata: dict[str, Any] | None = None
    function_call: dict[str, Any] | None = None


class ModelTransport(Protocol):
    async def generate(self, payload: GenerateRequest) -> GenerationResult: ...


class GeminiTransport:
    """Small Gemini adapter over the generateContent and predict REST endpoints."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        http_timeout_s: float = 120.0,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.http_timeout_s = http_timeout_s

    async def generate(self, payload: GenerateRequest) -> GenerationResult:
        if not self.api_key:
            raise TransportError("GEMINI_API_KEY is missing")
        if payload.image_output:
            response_json = await asyncio.to_thread(
                self._post, f"models/{payload.model}:predict", _image_request_body(payload)
            )
            return _parse_image_response(response_json)

        response_json = await asyncio.to_thread(
            self._post, f"models/{payload.model}:generateContent", _content_request_body(payload)
        )
        return _parse_content_response(response_json)

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/{parse.quote(path, safe='/:.-_')}"
        req = request.Request(
            url=url,
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers={
                "x-goog-api-key": self.api_key,
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.http_timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            message = exc.read().decode("utf-8", errors="replace")
            raise TransportError(
                f"Model request failed with status {exc.code}: {message[:400]}"
            ) from exc
        except error.URLError as exc:
            raise TransportError(f"Model request failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise TransportError("Model request timed out at the socket layer") from exc

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise TransportError("Model returned non-JSON response") from exc
        if not isinstance(parsed, dict):
            raise TransportError("Model response must be a JSON object")
        return parsed


def _content_request_body(payload: GenerateRequest) -> dict[str, Any]:
    parts: list[dict[str, Any]] = []
    if payload.prompt_image:
        mime_type, data = _split_data_uri(payload.prompt_image)
        parts.append({"inline_data": {"mime_type": mime_type, "data": data}})
    parts.append({"text": payload.prompt})

    generation_config: dict[str, Any] = {}
    if payload.temperature is not None:
        generation_config["temperature"] = payload.temperature
    if payload.top_p is not None:
        generation_config["topP"] = payload.top_p
    if payload.top_k is not None:
        generation_config["topK"] = payload.top_k

    body: dict[str, Any] = {
        "contents": [{"role": "user", "parts": parts}],
        "safetySettings": [
            {"category": category, "threshold": "BLOCK_NONE"} for category in SAFETY_CATEGORIES
        ],
    }
    if payload.system_instruction:
        body["systemInstruction"] = {"parts": [{"text": payload.system_instruction}]}
    # Tool binding and structured output cannot be combined on one call.
    if payload.tools:
        body["tools"] = payload.tools
    elif payload.response_schema:
        generation_config["responseMimeType"] = "application/json"
        generation_config["responseSchema"] = payload.response_schema
    if generation_config:
        body["generationConfig"] = generation_config
    return body


def _image_request_body(payload: GenerateRequest) -> dict[str, Any]:
    return {
        "instances": [{"prompt": payload.prompt}],
        "parameters": {
            "sampleCount": 1,
            "outputMimeType": "image/png",
            "aspectRatio": "4:3",
        },
    }


def _parse_content_response(response_json: dict[str, Any]) -> GenerationResult:
    candidates = response_json.get("candidates") or []
    if not candidates:
        feedback = response_json.get("promptFeedback") or {}
        reason = feedback.get("blockReason", "no candidates")
        raise TransportError(f"Model response missing candidates: {reason}")

    candidate = candidates[0]
    content = candidate.get("content") or {}
    texts: list[str] = []
    function_call: dict[str, Any] | None = None
    for part in content.get("parts") or []:
        if not isinstance(part, dict):
            continue
        if function_call is None and isinstance(part.get("functionCall"), dict):
            function_call = part["functionCall"]
        if isinstance(part.get("text"), str):
            texts.append(part["text"])

    grounding = candidate.get("groundingMetadata")
    return GenerationResult(
        text="".join(texts),
        grounding_metadata=grounding if isinstance(grounding, dict) else None,
        function_call=function_call,
    )


def _parse_image_response(response_json: dict[str, Any]) -> GenerationResult:
    predictions = response_json.get("predictions") or []
    if not predictions or not isinstance(predictions[0], dict):
        raise TransportError("Image response missing predictions")
    image_bytes = predictions[0].get("bytesBase64Encoded")
    if not isinstance(image_bytes, str) or not image_bytes:
        raise TransportError("Image response missing image bytes")
    mime_type = predictions[0].get("mimeType") or "image/png"
    return GenerationResult(text=f"data:{mime_type};base64,{image_bytes}")


def _split_data_uri(value: str) -> tuple[str, str]:
    header, sep, data = value.partition(",")
    if not sep:
        return "image/png", value
    mime_type = header.removeprefix("data:").split(";", 1)[0] or "image/png"
    return mime_type, data
