import json
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .schemas import (
    FunctionCall,
    GenerationConfig,
    GenerationResult,
    GroundingCitation,
    InlineData,
    VideoOperation,
)


WIRE_ROLES = {"user": "user", "model": "model", "tool": "user"}


class GenerationError(RuntimeError):
    pass


def _wire_turn(turn: Dict[str, Any]) -> Dict[str, Any]:
    role = WIRE_ROLES.get(str(turn.get("role") or "user"), "user")
    return {"role": role, "parts": list(turn.get("parts") or [])}


def build_request_body(contents: List[Dict[str, Any]], config: GenerationConfig) -> Dict[str, Any]:
    body: Dict[str, Any] = {"contents": [_wire_turn(turn) for turn in contents]}
    if config.system_instruction:
        body["systemInstruction"] = {"parts": [{"text": config.system_instruction}]}
    tools: List[Dict[str, Any]] = []
    if config.tools:
        tools.append({"functionDeclarations": config.tools})
    if config.web_search:
        tools.append({"googleSearch": {}})
    if tools:
        body["tools"] = tools
    generation_config: Dict[str, Any] = {"temperature": config.temperature}
    if config.thinking_budget is not None:
        generation_config["thinkingConfig"] = {"thinkingBudget": config.thinking_budget}
    if config.response_schema:
        generation_config["responseMimeType"] = "application/json"
        generation_config["responseSchema"] = config.response_schema
    body["generationConfig"] = generation_config
    return body


def parse_generation_response(data: Dict[str, Any]) -> GenerationResult:
    candidates = data.get("candidates") or []
    if not candidates:
        return GenerationResult()
    candidate = candidates[0] or {}
    parts = (candidate.get("content") or {}).get("parts") or []
    texts: List[str] = []
    calls: List[FunctionCall] = []
    for part in parts:
        if not isinstance(part, dict):
            continue
        if part.get("thought"):
            continue
        if isinstance(part.get("text"), str):
            texts.append(part["text"])
        call = part.get("functionCall")
        if isinstance(call, dict) and call.get("name"):
            calls.append(FunctionCall(name=call["name"], args=call.get("args") or {}))
    grounding: List[GroundingCitation] = []
    chunks = (candidate.get("groundingMetadata") or {}).get("groundingChunks") or []
    for chunk in chunks:
        web = (chunk or {}).get("web") or {}
        if web.get("uri"):
            grounding.append(GroundingCitation(uri=web["uri"], title=web.get("title") or ""))
    model_turn = {"role": "model", "parts": parts} if parts else None
    return GenerationResult(text="".join(texts), function_calls=calls, grounding=grounding, model_turn=model_turn)


def parse_operation(data: Dict[str, Any]) -> VideoOperation:
    error = data.get("error")
    error_text: Optional[str] = None
    if isinstance(error, dict):
        error_text = str(error.get("message") or error)
    elif error:
        error_text = str(error)
    uri: Optional[str] = None
    samples = ((data.get("response") or {}).get("generateVideoResponse") or {}).get("generatedSamples") or []
    if samples:
        uri = ((samples[0] or {}).get("video") or {}).get("uri")
    return VideoOperation(name=str(data.get("name") or ""), done=bool(data.get("done")), error=error_text, uri=uri)


class GeminiClient:
    """Generation service over the Generative Language REST API.

    Every failure surfaces as GenerationError. Key problems are prefixed with
    ``API_KEY`` and transport failures with ``Network error`` so callers can classify them.
    """

    def __init__(self, base_url: str, api_key: Optional[str], timeout: float = 120.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def has_video_access(self) -> bool:
        return self.enabled

    async def generate(
        self,
        model: str,
        contents: List[Dict[str, Any]],
        config: GenerationConfig,
    ) -> GenerationResult:
        data = await self._request("POST", f"/models/{model}:generateContent", build_request_body(contents, config))
        return parse_generation_response(data)

    async def generate_structured(
        self,
        model: str,
        contents: List[Dict[str, Any]],
        schema: Dict[str, Any],
        config: GenerationConfig,
    ) -> GenerationResult:
        structured = config.model_copy(update={"response_schema": schema, "tools": [], "web_search": False})
        return await self.generate(model, contents, structured)

    async def generate_images(self, model: str, prompt: str, count: int = 1) -> List[InlineData]:
        payload = {"instances": [{"prompt": prompt}], "parameters": {"sampleCount": count}}
        data = await self._request("POST", f"/models/{model}:predict", payload)
        images: List[InlineData] = []
        for prediction in data.get("predictions") or []:
            encoded = (prediction or {}).get("bytesBase64Encoded")
            if encoded:
                images.append(InlineData(mime_type=prediction.get("mimeType") or "image/png", data=encoded))
        return images

    async def start_video(self, model: str, prompt: str, aspect_ratio: str = "16:9") -> VideoOperation:
        payload = {
            "instances": [{"prompt": prompt}],
            "parameters": {"aspectRatio": aspect_ratio, "resolution": "720p"},
        }
        data = await self._request("POST", f"/models/{model}:predictLongRunning", payload)
        return parse_operation(data)

    async def poll_video(self, operation: VideoOperation) -> VideoOperation:
        data = await self._request("GET", f"/{operation.name}")
        return parse_operation(data)

    async def download(self, uri: str) -> Tuple[bytes, str]:
        try:
            resp = await self.client.get(uri, headers=self._headers(), follow_redirects=True)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise self._status_error(exc) from exc
        except httpx.RequestError as exc:
            raise GenerationError(f"Network error: {exc}") from exc
        return resp.content, resp.headers.get("content-type", "video/mp4")

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-goog-api-key"] = self.api_key
        return headers

    def _error_message(self, response: httpx.Response) -> str:
        try:
            data = response.json()
        except Exception:
            return response.text
        if isinstance(data, dict):
            error = data.get("error", data)
            if isinstance(error, dict):
                message = error.get("message") or error.get("detail")
                if isinstance(message, str) and message.strip():
                    return message
            elif isinstance(error, str):
                return error
        return json.dumps(data, ensure_ascii=True)

    def _status_error(self, exc: httpx.HTTPStatusError) -> GenerationError:
        status = exc.response.status_code
        detail = self._error_message(exc.response)
        lowered = detail.lower()
        if status in (401, 403) or "api key" in lowered or "api_key" in lowered:
            return GenerationError(f"API_KEY rejected ({status}): {detail}")
        return GenerationError(f"Generation request failed ({status}): {detail}")

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.enabled:
            raise GenerationError("API_KEY missing: no generation API key configured.")
        url = f"{self.base_url}{path}"
        try:
            if method == "GET":
                resp = await self.client.get(url, headers=self._headers())
            else:
                resp = await self.client.post(url, json=payload, headers=self._headers())
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise self._status_error(exc) from exc
        except httpx.RequestError as exc:
            raise GenerationError(f"Network error: {exc}") from exc
        return resp.json()

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
