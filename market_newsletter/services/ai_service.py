import asyncio
import logging
import os
import time
from typing import Any, Dict, List, Optional

import yaml
from google import genai
from google.genai import types

from market_newsletter.utils.logging_config import log_ai_interaction


class AIServiceError(Exception):
    pass


class AIService:
    """
    Central AI service for Gemini interactions using the Google GenAI API.

    Prompt templates and model parameters live in a YAML file; every call renders
    a named template with a context mapping and returns the model's text.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        prompts_path: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        self.api_key = api_key or os.getenv("GEMINI_API_KEY")
        if not self.api_key and client is None:
            raise ValueError("Gemini API key required. Set GEMINI_API_KEY or pass api_key parameter.")

        self.client = client or genai.Client(api_key=self.api_key)

        self.prompts_path = prompts_path or os.getenv("PROMPTS_PATH", "config/prompts.yaml")
        self.prompts = self._load_prompts()

        params = self.prompts.get("parameters", {}) if isinstance(self.prompts, dict) else {}
        model_cfg = params.get("gemini", {}) if isinstance(params, dict) else {}
        self.model = model or os.getenv("GEMINI_MODEL") or model_cfg.get("model", "gemini-2.5-flash")
        self.call_timeout = float(model_cfg.get("timeout_seconds", 180))

        temps_cfg = params.get("temperatures", {}) if isinstance(params, dict) else {}
        self.temperatures: Dict[str, float] = {
            "article_scoring": float(temps_cfg.get("article_scoring", 0.2)),
            "daily_digest": float(temps_cfg.get("daily_digest", 0.5)),
        }

        self.logger = logging.getLogger(__name__)

    def _load_prompts(self) -> Dict[str, Any]:
        """Load prompts from YAML configuration file."""
        try:
            with open(self.prompts_path, "r", encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
        except FileNotFoundError as e:
            raise AIServiceError(f"Prompts file not found at {self.prompts_path}") from e
        except yaml.YAMLError as e:
            raise AIServiceError(f"Error parsing YAML at {self.prompts_path}: {e}") from e

    def _format_prompt(self, prompt_key: str, context: Dict[str, Any]) -> List[Dict[str, str]]:
        """Construct system/user messages from the prompt template and context."""
        cfg = self.prompts.get(prompt_key)
        if not cfg:
            raise AIServiceError(f"Prompt '{prompt_key}' not defined in {self.prompts_path}")

        system_text = (cfg.get("system") or "").strip()
        template = cfg.get("template") or ""
        try:
            user_text = template.format(**context)
        except (KeyError, IndexError, ValueError) as e:
            raise AIServiceError(f"Failed to render prompt '{prompt_key}': {e}") from e

        messages = []
        if system_text:
            messages.append({"role": "system", "content": system_text})
        messages.append({"role": "user", "content": user_text})
        return messages

    async def generate(self, prompt_key: str, context: Dict[str, Any], max_tokens: int = 4096) -> str:
        """Render ``prompt_key`` with ``context`` and return the model's text response."""
        messages = self._format_prompt(prompt_key, context)
        temperature = self.temperatures.get(prompt_key, 0.3)
        return await self._call_gemini(messages, prompt_key, max_tokens=max_tokens, temperature=temperature)

    async def _call_gemini(
        self,
        messages: List[Dict[str, str]],
        prompt_key: str,
        max_tokens: int = 4096,
        temperature: float = 0.3,
    ) -> str:
        system_instruction = None
        contents = []
        for msg in messages:
            if msg["role"] == "system":
                system_instruction = msg["content"]
            else:
                contents.append(msg["content"])

        config_params: Dict[str, Any] = {
            "max_output_tokens": max_tokens,
            "temperature": temperature,
        }
        if system_instruction:
            config_params["system_instruction"] = system_instruction

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self.client.aio.models.generate_content(
                    model=self.model,
                    contents=contents,
                    config=types.GenerateContentConfig(**config_params),
                ),
                timeout=self.call_timeout,
            )
        except asyncio.TimeoutError as e:
            self._log_interaction(prompt_key, None, start, success=False)
            raise AIServiceError(f"Gemini API call timed out after {self.call_timeout:.0f} seconds") from e
        except Exception as e:
            self._log_interaction(prompt_key, None, start, success=False)
            raise AIServiceError(f"Failed to call Gemini API: {e}") from e

        text = self._extract_text(response)
        self._log_interaction(prompt_key, response, start, success=bool(text))
        if not text:
            raise AIServiceError(f"Empty response from Gemini for '{prompt_key}'")
        return text

    def _extract_text(self, response: Any) -> str:
        try:
            text = getattr(response, "text", None)
        except ValueError:
            # .text raises when the candidate holds only non-text parts
            text = None
        if text:
            return text

        candidates = getattr(response, "candidates", None) or []
        if candidates:
            content = getattr(candidates[0], "content", None)
            for part in getattr(content, "parts", None) or []:
                if getattr(part, "text", None):
                    return part.text
        return ""

    def _log_interaction(self, prompt_key: str, response: Any, start: float, success: bool) -> None:
        usage = getattr(response, "usage_metadata", None) if response is not None else None
        tokens = getattr(usage, "total_token_count", 0) if usage else 0
        log_ai_interaction(
            self.logger,
            prompt_key=prompt_key,
            model=self.model,
            tokens_used=tokens or 0,
            response_time_ms=(time.monotonic() - start) * 1000,
            success=success,
        )
