"""
OpenAI-backed rewrite client.

Turns a user's message into a polite workplace reply and reports the
measured token usage. Accounting happens elsewhere; this client only
makes the call and normalizes its failures.
"""

from dataclasses import dataclass
from typing import Optional

import openai
from openai import OpenAI

from ..core.errors import ExternalCallError, RewriteTimeoutError
from ..core.token_counter import TokenUsage

DEFAULT_SYSTEM_PROMPT = """You are a text rewriting assistant. Rewrite the user's message into a polite, professional workplace reply.

Rules:
- Preserve the original meaning and reply in the same language
- Remove profanity, slang and sarcasm
- Keep it natural, friendly and concise
- Output only the rewritten text"""


@dataclass(frozen=True)
class RewriteResult:
    """Rewritten text plus the tokens the call actually cost."""
    text: str
    usage: TokenUsage

    @property
    def input_tokens(self) -> int:
        return self.usage.input_tokens

    @property
    def output_tokens(self) -> int:
        return self.usage.output_tokens


class OpenAIRewriter:
    """Callable rewrite collaborator backed by OpenAI chat completions.

    Usable anywhere a ``rewrite(text, timeout)`` function is expected.
    """

    def __init__(
        self,
        model: str,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        max_tokens: int = 1024,
        temperature: float = 0.7,
        client: Optional[OpenAI] = None
    ):
        """Initialize the rewriter.

        Args:
            model: OpenAI model name (required)
            system_prompt: Instructions sent ahead of the user's text
            max_tokens: Cap on generated tokens
            temperature: Sampling temperature
            client: Preconfigured OpenAI client, created from the
                environment when omitted

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.client = client or OpenAI()

    def __call__(self, text: str, timeout: float) -> RewriteResult:
        """Rewrite text within the given timeout.

        Args:
            text: The user's message
            timeout: Seconds to wait for the provider before giving up

        Returns:
            RewriteResult with the rewritten text and measured usage

        Raises:
            RewriteTimeoutError: If the provider did not answer in time
            ExternalCallError: On any other provider failure or an
                unusable response
        """
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": text},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                timeout=timeout
            )
        except openai.APITimeoutError as e:
            raise RewriteTimeoutError(f"Rewrite call timed out after {timeout}s") from e
        except openai.OpenAIError as e:
            raise ExternalCallError(f"Rewrite call failed: {e}") from e

        if not response.choices or not response.choices[0].message.content:
            raise ExternalCallError("No content in rewrite response")

        usage = response.usage
        if not usage:
            raise ExternalCallError("Rewrite response missing usage information")

        try:
            measured = TokenUsage(
                input_tokens=usage.prompt_tokens,
                output_tokens=usage.completion_tokens
            )
        except ValueError as e:
            raise ExternalCallError(f"Rewrite response has invalid usage: {e}") from e

        return RewriteResult(text=response.choices[0].message.content, usage=measured)
