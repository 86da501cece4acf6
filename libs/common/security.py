"""Security utilities for platform services."""

import re
import unicodedata
from typing import Dict

import structlog

logger = structlog.get_logger("security")


class InputSanitizer:
    """Sanitizes and validates free-text user inputs."""

    # Control characters other than tab/newline carry no meaning in a prompt.
    _control_chars = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

    def sanitize_prompt(self, text: str, max_length: int = 4000) -> str:
        """Normalize a prompt and enforce its length.

        Raises ``ValueError`` for non-string, empty or over-long input; text is
        never silently truncated because the prompt is recorded in the ledger.
        """
        if not isinstance(text, str):
            raise ValueError("Prompt must be a string")

        text = unicodedata.normalize("NFC", text)
        cleaned = self._control_chars.sub("", text).strip()
        if cleaned != text.strip():
            logger.warning("Removed control characters from prompt")

        if not cleaned:
            raise ValueError("Prompt must not be empty")
        if len(cleaned) > max_length:
            raise ValueError(f"Prompt exceeds {max_length} characters")
        return cleaned


class SecurityHeaders:
    """Security headers for HTTP responses."""

    @staticmethod
    def get_security_headers() -> Dict[str, str]:
        """Get recommended security headers."""
        return {
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
            "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
            "Referrer-Policy": "no-referrer",
        }


def create_input_sanitizer() -> InputSanitizer:
    """Create input sanitizer."""
    return InputSanitizer()
