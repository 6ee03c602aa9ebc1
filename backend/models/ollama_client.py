"""
HTTP client for Ollama and OpenAI-compatible model servers.

Node executors treat this as a black box: plain, streamed and JSON-constrained
chat, image prompts, embeddings and model pulls. Calls are blocking
(``requests``); async callers go through ``utils.async_helpers.run_in_thread``.
"""

import json
import logging
from typing import Any, Dict, Iterator, List, Optional

import requests

logger = logging.getLogger(__name__)

OLLAMA = "ollama"
OPENAI = "openai"


class ModelClientError(RuntimeError):
    """Raised when the model server cannot be reached or rejects a request."""


class OllamaClient:
    """
    Minimal model-server client.

    Args:
        base_url: Server root, e.g. ``http://localhost:11434``
        api_key: Bearer token for OpenAI-style endpoints
        api_type: ``"ollama"`` or ``"openai"``
        timeout: Per-request timeout in seconds
        session: Optional requests session (tests inject a fake)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        api_type: str = OLLAMA,
        timeout: float = 120.0,
        session: Optional[requests.Session] = None,
    ):
        if api_type not in (OLLAMA, OPENAI):
            raise ValueError(f"Unsupported API type: {api_type}")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.api_type = api_type
        self.timeout = timeout
        self.session = session or requests.Session()

    def get_config(self) -> Dict[str, str]:
        return {"base_url": self.base_url, "api_type": self.api_type}

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self, endpoint: str) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        # Native Ollama endpoints never take a bearer token
        if self.api_key and not endpoint.startswith("/api/"):
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _send(self, endpoint: str, method: str, body: Optional[Dict], stream: bool = False):
        url = f"{self.base_url}{endpoint}"
        try:
            response = self.session.request(
                method,
                url,
                headers=self._headers(endpoint),
                data=json.dumps(body) if body is not None else None,
                timeout=self.timeout,
                stream=stream,
            )
        except requests.ConnectionError as e:
            raise ModelClientError(
                f"Connection error: Unable to connect to {self.base_url}. "
                f"Please check if the server is running and the URL is correct."
            ) from e
        except requests.Timeout as e:
            raise ModelClientError(f"Request to {url} timed out after {self.timeout}s") from e

        if not response.ok:
            raise ModelClientError(f"Request failed: {response.status_code} {response.reason}")
        return response

    def _request(self, endpoint: str, method: str = "POST", body: Optional[Dict] = None) -> Any:
        response = self._send(endpoint, method, body)
        try:
            return response.json()
        except ValueError as e:
            raise ModelClientError(f"Invalid JSON from {endpoint}") from e

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------

    def list_models(self) -> List[Dict[str, Any]]:
        if self.api_type == OLLAMA:
            return self._request("/api/tags", "GET").get("models", [])
        return self._request("/models", "GET").get("data", [])

    def send_chat(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        options: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Send a chat request and return the assistant text."""
        options = options or {}
        if self.api_type == OLLAMA:
            payload = {"model": model, "messages": messages, "stream": False}
            if options:
                payload["options"] = options
            data = self._request("/api/chat", "POST", payload)
            return (data.get("message") or {}).get("content", "")

        payload = {"model": model, "messages": messages, "stream": False, **options}
        data = self._request("/chat/completions", "POST", payload)
        choices = data.get("choices") or [{}]
        return (choices[0].get("message") or {}).get("content", "")

    def send_structured_chat(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        format: Any,
        options: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Chat constrained to JSON output; returns the raw assistant text.

        Ollama receives ``format`` as-is (``"json"`` or a JSON schema).
        OpenAI-compatible servers only get ``json_object`` mode, so the schema
        is described in the system prompt instead.
        """
        options = options or {}
        if self.api_type == OLLAMA:
            payload = {"model": model, "messages": messages, "format": format, "stream": False}
            if options:
                payload["options"] = options
            data = self._request("/api/chat", "POST", payload)
            return (data.get("message") or {}).get("content", "")

        payload = {
            "model": model,
            "messages": _with_schema_prompt(messages, _schema_prompt(format)),
            "response_format": {"type": "json_object"},
            "stream": False,
            **options,
        }
        data = self._request("/chat/completions", "POST", payload)
        choices = data.get("choices") or [{}]
        return (choices[0].get("message") or {}).get("content", "")

    def pull_model(self, model: str, insecure: bool = False) -> Iterator[Dict[str, Any]]:
        """Yield the progress records Ollama streams while pulling ``model``."""
        if self.api_type != OLLAMA:
            raise ModelClientError("Model pulling is only supported with Ollama")
        payload = {"model": model, "insecure": insecure, "stream": True}
        return self._iter_pull(model, self._send("/api/pull", "POST", payload, stream=True))

    def _iter_pull(self, model: str, response) -> Iterator[Dict[str, Any]]:
        digest = ""
        try:
            for raw_line in response.iter_lines(decode_unicode=True):
                if not raw_line or not raw_line.strip():
                    continue
                try:
                    data = json.loads(raw_line)
                except ValueError:
                    logger.warning("Failed to parse pull response line: %s", raw_line[:200])
                    continue
                if data.get("digest") and data["digest"] != digest:
                    digest = data["digest"]
                    logger.debug("Pulling %s: new layer %s", model, digest[:19])
                yield data
        finally:
            response.close()

    def stream_chat(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        options: Optional[Dict[str, Any]] = None,
    ) -> Iterator[str]:
        """Yield text chunks as the server streams them."""
        options = options or {}
        if self.api_type == OLLAMA:
            payload = {"model": model, "messages": messages, "stream": True}
            if options:
                payload["options"] = options
            endpoint = "/api/chat"
        else:
            payload = {"model": model, "messages": messages, "stream": True, **options}
            endpoint = "/chat/completions"

        response = self._send(endpoint, "POST", payload, stream=True)
        try:
            for raw_line in response.iter_lines(decode_unicode=True):
                if not raw_line:
                    continue
                chunk, done = self._parse_stream_line(raw_line)
                if chunk:
                    yield chunk
                if done:
                    break
        finally:
            response.close()

    def _parse_stream_line(self, line: str):
        if self.api_type == OPENAI:
            if not line.startswith("data:"):
                return "", False
            line = line[len("data:"):].strip()
            if line == "[DONE]":
                return "", True
        try:
            data = json.loads(line)
        except ValueError:
            logger.warning("Failed to parse streaming response line: %s", line[:200])
            return "", False

        if self.api_type == OLLAMA:
            return (data.get("message") or {}).get("content", ""), bool(data.get("done"))
        choices = data.get("choices") or [{}]
        delta = choices[0].get("delta") or {}
        return delta.get("content") or "", choices[0].get("finish_reason") is not None

    def generate_with_images(
        self,
        model: str,
        prompt: str,
        images: List[str],
        options: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Run a vision prompt. ``images`` are bare base64 payloads for Ollama
        and data URLs for OpenAI-compatible servers.
        """
        options = options or {}
        if self.api_type == OLLAMA:
            payload = {"model": model, "prompt": prompt, "images": images, "stream": False}
            if options:
                payload["options"] = options
            return self._request("/api/generate", "POST", payload).get("response", "")

        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        content.extend({"type": "image_url", "image_url": {"url": image}} for image in images)
        return self.send_chat(model, [{"role": "user", "content": content}], options)

    def generate_embeddings(self, model: str, text: str) -> List[float]:
        if self.api_type == OLLAMA:
            data = self._request("/api/embed", "POST", {"model": model, "input": text})
            embeddings = data.get("embeddings") or [[]]
            return embeddings[0]
        data = self._request("/embeddings", "POST", {"model": model, "input": text})
        return (data.get("data") or [{}])[0].get("embedding", [])


_JSON_REMINDER = "Your response MUST be a valid JSON object, properly formatted and parsable."


def _schema_prompt(schema: Any) -> str:
    """Describe a JSON format for servers that cannot enforce a schema."""
    if isinstance(schema, dict) and schema.get("type") == "object" and isinstance(schema.get("properties"), dict):
        fields = [
            f'- "{key}": {(prop or {}).get("description", "No description")} ({(prop or {}).get("type", "string")})'
            for key, prop in schema["properties"].items()
        ]
        return (
            "You must respond with a valid JSON object that matches this schema:\n"
            f"```json\n{json.dumps(schema, indent=2)}\n```\n\n"
            "The JSON object should include these fields:\n"
            + "\n".join(fields)
            + f"\n\n{_JSON_REMINDER}"
        )
    if isinstance(schema, dict):
        fields = [f'- "{key}": {description}' for key, description in schema.items()]
        return (
            "You must respond with a valid JSON object that includes these fields:\n"
            + "\n".join(fields)
            + f"\n\n{_JSON_REMINDER}"
        )
    return "You must respond with a valid JSON object."


def _with_schema_prompt(messages: List[Dict[str, Any]], description: str) -> List[Dict[str, Any]]:
    """Append ``description`` to the first system message, or prepend one."""
    for index, message in enumerate(messages):
        if message.get("role") == "system":
            updated = list(messages)
            updated[index] = {**message, "content": f"{message.get('content', '')}\n\n{description}"}
            return updated
    return [{"role": "system", "content": description}, *messages]
