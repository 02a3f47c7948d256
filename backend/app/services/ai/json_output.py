"""Helpers for structured (JSON) model output."""
import json
import re
from typing import Any

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)


def extract_json(text: str) -> Any:
    """
    Parse the JSON payload of a model response.

    Models often wrap JSON in a markdown code fence or surround it with a
    sentence; the fenced block wins, otherwise the outermost ``{...}``.

    Raises:
        ValueError: no parseable JSON found.
    """
    candidate = text.strip()
    fenced = _FENCE_RE.search(candidate)
    if fenced:
        candidate = fenced.group(1)
    else:
        start, end = candidate.find("{"), candidate.rfind("}")
        if start != -1 and end > start:
            candidate = candidate[start:end + 1]
    return json.loads(candidate)
