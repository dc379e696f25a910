"""
JSON utilities for cleaning LLM responses.
"""

import re

_FENCE_PATTERN = re.compile(r'```(?:json|JSON)?\s*')


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers and surrounding prose.

    Models sometimes wrap the payload in ```json fences or add a sentence before or after it.
    Everything outside the outermost JSON object or array is dropped.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string (may still be invalid JSON)
    """
    response = _FENCE_PATTERN.sub('', response.strip()).strip()

    starts = [i for i in (response.find('{'), response.find('[')) if i != -1]
    if not starts:
        return response
    start = min(starts)
    closing = '}' if response[start] == '{' else ']'
    end = response.rfind(closing)
    if end < start:
        return response[start:]

    return response[start:end + 1]
