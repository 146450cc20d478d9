import hashlib
import shlex
import subprocess
import time
from typing import Dict, List, Optional, Protocol, runtime_checkable

import requests

from core.exceptions import CompletionError
from core.logging_utils import log_json


@runtime_checkable
class CompletionService(Protocol):
    """Anything that turns a prompt into text. May raise; callers fall back."""

    def complete(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        ...


class ModelAdapter:
    """
    Routes prompts to a configured language model backend.

    Backends are tried in order: OpenAI (when ``openai_api_key`` is set),
    OpenRouter (when ``api_key`` is set), then a local command such as
    ``ollama run llama3``. Responses are cached in memory by prompt hash.
    """

    OPENAI_URL = "https://api.openai.com/v1/chat/completions"
    OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"

    def __init__(self, api_key: Optional[str] = None, openai_api_key: Optional[str] = None,
                 model_name: str = "openrouter/auto", local_model_command: Optional[str] = None,
                 request_timeout_s: float = 60.0, max_tokens: Optional[int] = None,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.openai_api_key = openai_api_key
        self.model_name = model_name
        self.local_model_command = local_model_command
        self.request_timeout_s = request_timeout_s
        self.max_tokens = max_tokens
        self.session = session or requests.Session()
        self._mem_cache: Dict[str, str] = {}

    @classmethod
    def from_config(cls, config_manager) -> "ModelAdapter":
        return cls(
            api_key=config_manager.get("api_key"),
            openai_api_key=config_manager.get("openai_api_key"),
            model_name=config_manager.get("model_name") or "openrouter/auto",
            local_model_command=config_manager.get("local_model_command"),
            request_timeout_s=config_manager.get("llm_timeout_s") or 60.0,
            max_tokens=config_manager.get("max_tokens"),
        )

    def is_available(self) -> bool:
        return bool(self.openai_api_key or self.api_key or self.local_model_command)

    @staticmethod
    def _cache_key(prompt: str, system_prompt: Optional[str]) -> str:
        return hashlib.sha256(f"{system_prompt or ''}\x00{prompt}".encode("utf-8")).hexdigest()

    def _make_request_with_retries(self, url, headers, json_payload, retries=3, backoff_factor=0.5):
        for attempt in range(retries):
            try:
                response = self.session.post(url, headers=headers, json=json_payload,
                                             timeout=self.request_timeout_s)
                response.raise_for_status()
                return response
            except requests.exceptions.RequestException as e:
                if attempt < retries - 1:
                    sleep_time = backoff_factor * (2 ** attempt)
                    log_json("WARN", "request_failed_retrying",
                             details={"attempt": attempt + 1, "retries": retries, "error": str(e),
                                      "sleep_time": f"{sleep_time:.2f}"})
                    time.sleep(sleep_time)
                else:
                    raise

    def _messages(self, prompt: str, system_prompt: Optional[str]) -> List[Dict[str, str]]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    def _chat(self, url: str, key: str, model: str, prompt: str, system_prompt: Optional[str]) -> str:
        headers = {"Authorization": f"Bearer {key}", "Content-Type": "application/json"}
        payload = {"model": model, "messages": self._messages(prompt, system_prompt)}
        if self.max_tokens:
            payload["max_tokens"] = self.max_tokens
        response = self._make_request_with_retries(url, headers, payload)
        try:
            return response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise CompletionError(f"Malformed completion response from {url}: {e}") from e

    def call_openai(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        if not self.openai_api_key:
            raise CompletionError("openai_api_key not set for OpenAI call.")
        model = self.model_name if "/" not in self.model_name else "gpt-4o-mini"
        return self._chat(self.OPENAI_URL, self.openai_api_key, model, prompt, system_prompt)

    def call_openrouter(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        if not self.api_key:
            raise CompletionError("api_key not set for OpenRouter call.")
        return self._chat(self.OPENROUTER_URL, self.api_key, self.model_name, prompt, system_prompt)

    def call_local(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        if not self.local_model_command:
            raise CompletionError("local_model_command not configured.")
        full_prompt = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt
        command_parts = shlex.split(self.local_model_command) + [full_prompt]
        try:
            result = subprocess.run(command_parts, capture_output=True, text=True, check=True,
                                    timeout=self.request_timeout_s)
        except FileNotFoundError as e:
            raise CompletionError(f"Local model command not found: {command_parts[0]}") from e
        except subprocess.CalledProcessError as e:
            raise CompletionError(f"Local model command failed with exit code {e.returncode}: "
                                  f"{(e.stderr or '').strip()}") from e
        except subprocess.TimeoutExpired as e:
            raise CompletionError("Local model command timed out") from e
        return result.stdout.strip()

    def complete(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        key = self._cache_key(prompt, system_prompt)
        cached = self._mem_cache.get(key)
        if cached is not None:
            return cached

        backends = []
        if self.openai_api_key:
            backends.append(("openai", self.call_openai))
        if self.api_key:
            backends.append(("openrouter", self.call_openrouter))
        if self.local_model_command:
            backends.append(("local", self.call_local))
        if not backends:
            raise CompletionError("No model backend configured.")

        errors = []
        for name, call in backends:
            try:
                response = call(prompt, system_prompt)
            except (requests.exceptions.RequestException, CompletionError) as e:
                log_json("WARN", "model_backend_failed", details={"backend": name, "error": str(e)})
                errors.append(f"{name}: {e}")
                continue
            self._mem_cache[key] = response
            return response
        raise CompletionError("No model successfully responded: " + "; ".join(errors))
