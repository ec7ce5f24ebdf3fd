"""Secret redaction for log output.

Scrape URLs and handler errors can carry credentials (share tokens in query
strings, API keys echoed back by upstream services). They are masked before
anything is written to the log stream.
"""

import re
from typing import Optional


class SecretRedactor:
    """Mask credentials in free text."""

    PATTERNS = {
        'bearer': (r'\b(Bearer)\s+[A-Za-z0-9._~+/=-]+', r'\1 [REDACTED]'),
        'query_secret': (
            r'([?&](?:auth_key|api_key|apikey|token|access_token|key|password|secret)=)[^&\s#]+',
            r'\1[REDACTED]',
        ),
        'basic_auth': (r'(https?://)[^/\s:@]+:[^/\s@]+@', r'\1[REDACTED]@'),
        'deepl_key': (r'\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}:fx\b', '[DEEPL_KEY_REDACTED]'),
    }

    @classmethod
    def redact(cls, text: Optional[str]) -> str:
        """
        Redact secrets from text.

        Args:
            text: Text to redact

        Returns:
            Text with secrets replaced by redaction markers
        """
        if not text:
            return ""

        result = text
        for pattern, replacement in cls.PATTERNS.values():
            result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)
        return result

    @classmethod
    def contains_secret(cls, text: Optional[str]) -> bool:
        if not text:
            return False
        return any(
            re.search(pattern, text, re.IGNORECASE)
            for pattern, _ in cls.PATTERNS.values()
        )
