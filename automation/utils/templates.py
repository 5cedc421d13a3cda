"""Prompt template placeholder substitution.

Templates use ``{{name}}`` placeholders. Substitution is plain string
replacement: no expressions, no control flow. Placeholders without a value
(missing key or None) are left untouched so a misconfigured template stays
visible in the generated prompt and in the run log.
"""

import re
from collections.abc import Mapping
from typing import Any

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")


def replace_placeholders(template: str | None, values: Mapping[str, Any]) -> str:
    """Substitute ``{{key}}`` placeholders with values.

    Args:
        template: Template text (None yields an empty string)
        values: Placeholder values; None values are treated as missing

    Returns:
        Rendered text.

    Example:
        >>> replace_placeholders("Ad for {{product_name}}", {"product_name": "Mug"})
        'Ad for Mug'
        >>> replace_placeholders("{{unknown}} stays", {})
        '{{unknown}} stays'
    """
    if not template:
        return ""

    def _substitute(match: re.Match[str]) -> str:
        value = values.get(match.group(1))
        return match.group(0) if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(_substitute, template)
