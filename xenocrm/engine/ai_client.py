"""
One client for the AI backends used to draft rules, copy and summaries.
Backends: Claude (anthropic SDK) and DeepSeek chat/reasoner (HTTP).

Build one AIClient at startup (AIClient.from_config) and pass it to the
functions that need it. The client holds no state beyond its settings.
"""

import logging
from typing import Optional

import requests
from anthropic import Anthropic

logger = logging.getLogger(__name__)

MODEL_CHOICES = ['claude', 'deepseek-chat', 'deepseek-reasoner']

CLAUDE_MODEL = "claude-3-5-sonnet-20241022"
DEFAULT_SYSTEM_PROMPT = "You are a marketing assistant for a retail CRM."


class AIClient:
    """Routes prompts to Claude or DeepSeek with a bounded timeout."""

    def __init__(
        self,
        model: str = 'deepseek-chat',
        deepseek_api_key: str = '',
        deepseek_base_url: str = 'https://api.deepseek.com',
        anthropic_api_key: str = '',
        timeout: float = 10.0,
    ):
        if model not in MODEL_CHOICES:
            raise ValueError(f"Unknown AI model '{model}'. Choose from: {', '.join(MODEL_CHOICES)}")
        self.model = model
        self.deepseek_api_key = deepseek_api_key
        self.deepseek_base_url = deepseek_base_url.rstrip('/')
        self.anthropic_api_key = anthropic_api_key
        self.timeout = timeout

    @classmethod
    def from_config(cls, cfg, model: Optional[str] = None) -> 'AIClient':
        return cls(
            model=model or cfg.DEFAULT_AI_MODEL,
            deepseek_api_key=cfg.DEEPSEEK_API_KEY,
            deepseek_base_url=cfg.DEEPSEEK_BASE_URL,
            anthropic_api_key=cfg.ANTHROPIC_API_KEY,
            timeout=cfg.AI_TIMEOUT_SECONDS,
        )

    def complete(self, prompt: str, system: Optional[str] = None, max_tokens: int = 1000) -> str:
        """
        Send a prompt to the configured backend.

        Returns: Generated text
        Raises: ValueError when the backend's key is missing,
                RuntimeError on any API failure
        """
        backend = self._call_claude if self.model == 'claude' else self._call_deepseek
        return backend(prompt, system, max_tokens)

    def _call_claude(self, prompt: str, system: Optional[str], max_tokens: int) -> str:
        if not self.anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY not set in environment")

        client = Anthropic(api_key=self.anthropic_api_key, timeout=self.timeout)
        logger.debug(f"claude <- {len(prompt)} chars, max_tokens={max_tokens}")
        try:
            reply = client.messages.create(
                model=CLAUDE_MODEL,
                max_tokens=max_tokens,
                system=system or DEFAULT_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
            )
        except Exception as e:
            logger.error(f"Claude request failed: {type(e).__name__}: {e}")
            raise RuntimeError(f"Claude request failed: {e}") from e
        return reply.content[0].text

    def _call_deepseek(self, prompt: str, system: Optional[str], max_tokens: int) -> str:
        """OpenAI-compatible chat completion."""
        if not self.deepseek_api_key:
            raise ValueError("DEEPSEEK_API_KEY not set in environment")

        messages = [{"role": "system", "content": system}] if system else []
        messages.append({"role": "user", "content": prompt})

        logger.debug(f"{self.model} <- {len(prompt)} chars, max_tokens={max_tokens}")
        try:
            response = requests.post(
                f"{self.deepseek_base_url}/chat/completions",
                json={"model": self.model, "messages": messages, "max_tokens": max_tokens, "stream": False},
                headers={"Authorization": f"Bearer {self.deepseek_api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"DeepSeek request failed: {e}")
            raise RuntimeError(f"DeepSeek request failed: {e}") from e

        try:
            return body['choices'][0]['message']['content']
        except (KeyError, IndexError, TypeError) as e:
            logger.error(f"DeepSeek reply had no completion: {body!r:.200}")
            raise RuntimeError(f"Unexpected DeepSeek response format: {e}") from e
