"""
Token counting and preview helpers.

Holds measured token counts returned by the rewrite call.
"""

from dataclasses import dataclass

PREVIEW_ELLIPSIS = "..."


@dataclass(frozen=True)
class TokenUsage:
    """Measured token usage of one rewrite call.

    Contains exact token counts reported by the provider, never estimates.
    """
    input_tokens: int
    output_tokens: int

    def __post_init__(self):
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError(
                f"Token counts must be >= 0, got input={self.input_tokens} output={self.output_tokens}"
            )

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens


def truncate_preview(text: str, max_length: int) -> str:
    """Cut text to max_length characters, appending an ellipsis when cut.

    Args:
        text: Text to shorten
        max_length: Maximum number of characters kept from the text

    Returns:
        The original text if short enough, otherwise the prefix plus "..."
    """
    if text is None:
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length] + PREVIEW_ELLIPSIS
