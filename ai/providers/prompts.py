"""Instruction templates and reply parsing shared by the providers."""
from __future__ import annotations

import json
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from core.logging import logger

from .types import GrammarInput, PreparedPrompt, RawText

# Substrings that mark a string as an already fully-formed instruction prompt.
PREPARED_PROMPT_MARKERS = ("JSON array", "ANALYZE THIS TEXT")

GRAMMAR_TYPES = ("grammar", "spelling")
DEFAULT_CORRECTION_MESSAGE = "Suggested correction"

REWRITE_TONES = {
    "more-formal": "in a more formal and professional tone",
    "more-casual": "in a more casual and friendly tone",
    "neutral": "in a neutral tone",
}

REWRITE_LENGTHS = {
    "shorter": ", making it more concise",
    "longer": ", expanding it with more detail",
}


def option(options: Optional[Mapping[str, Any]], name: str, default: Any = None) -> Any:
    """Look up a snake_case option, also accepting its camelCase spelling."""
    if not options:
        return default
    if options.get(name) is not None:
        return options[name]
    head, *rest = name.split("_")
    camel = head + "".join(part.title() for part in rest)
    value = options.get(camel)
    return default if value is None else value


def is_prepared_prompt(text: str) -> bool:
    return any(marker in text for marker in PREPARED_PROMPT_MARKERS)


def classify_grammar_input(value: Union[str, GrammarInput]) -> GrammarInput:
    """Tag a grammar-check input.

    Tagged inputs are returned unchanged.  A bare string is a
    ``PreparedPrompt`` when it contains one of the marker substrings and
    ``RawText`` otherwise.
    """
    if isinstance(value, (RawText, PreparedPrompt)):
        return value
    if not isinstance(value, str):
        raise TypeError(f"Grammar input must be str, RawText or PreparedPrompt, got {type(value).__name__}")
    return PreparedPrompt(value) if is_prepared_prompt(value) else RawText(value)


def grammar_prompt(text: str) -> str:
    return f"""Analyze the following text for grammar and spelling errors. Return a JSON array of corrections with this exact format:
[
  {{
    "error": "the incorrect text",
    "correction": "the corrected text",
    "type": "grammar" or "spelling",
    "message": "explanation of the error"
  }}
]

If there are no errors, return an empty array: []

Text to analyze:
{text}"""


def translate_prompt(text: str, source_lang: str, target_lang: str) -> str:
    return (
        f"Translate the following text from {source_lang} to {target_lang}. "
        f"Return ONLY the translated text, nothing else:\n\n{text}"
    )


def summarize_prompt(content: str, options: Optional[Mapping[str, Any]] = None) -> str:
    options = options or {}
    summary_type = options.get("type") or "key-points"
    if summary_type == "key-points":
        prompt = f"Summarize the following content into key points:\n\n{content}"
    elif summary_type == "tl;dr":
        prompt = f"Provide a TL;DR summary of the following content:\n\n{content}"
    else:
        prompt = f"Summarize the following content:\n\n{content}"
    if options.get("context"):
        prompt = f"Context: {options['context']}\n\n{prompt}"
    return prompt


def rewrite_instruction(options: Optional[Mapping[str, Any]] = None) -> str:
    options = options or {}
    instruction = "Rewrite the following text"

    tone = options.get("tone")
    if tone and tone != "as-is":
        instruction += " " + REWRITE_TONES.get(tone, f"in a {tone} tone")

    length = options.get("length")
    if length and length != "as-is":
        instruction += REWRITE_LENGTHS.get(length, "")

    return instruction


def rewrite_prompt(text: str, options: Optional[Mapping[str, Any]] = None) -> str:
    options = options or {}
    prompt = ""
    shared_context = option(options, "shared_context")
    if shared_context:
        prompt += f"Context: {shared_context}\n\n"
    if options.get("context"):
        prompt += f"Additional context: {options['context']}\n\n"
    prompt += f"{rewrite_instruction(options)}. Return ONLY the rewritten text, no explanations:\n\n{text}\n\nRewritten:"
    return prompt


# Reply parsing ---------------------------------------------------------------

def _balanced_array(text: str, start: int) -> Optional[str]:
    """Return the ``[...]`` opening at ``start``, matching brackets outside strings."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def _array_candidates(text: str) -> Iterator[str]:
    """Yield a balanced candidate for every ``[``, so a stray bracket in prose is skipped."""
    start = text.find("[")
    while start != -1:
        candidate = _balanced_array(text, start)
        if candidate is not None:
            yield candidate
        start = text.find("[", start + 1)


def extract_json_array(text: str) -> Optional[List[Any]]:
    """Return the first JSON array found in ``text``, or ``None``."""
    for candidate in _array_candidates(text):
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, list):
            return value
    return None


def normalize_correction(item: Mapping[str, Any]) -> Dict[str, Any]:
    correction_type = item.get("type")
    if correction_type not in GRAMMAR_TYPES:
        correction_type = "grammar"
    return {
        "error": item.get("error", ""),
        "correction": item.get("correction", ""),
        "type": correction_type,
        "message": item.get("message") or DEFAULT_CORRECTION_MESSAGE,
    }


def parse_corrections(reply: str) -> List[Dict[str, Any]]:
    """Parse a grammar reply; no JSON array means no corrections."""
    items = extract_json_array(reply)
    if items is None:
        logger.warning("No JSON array found in response, returning empty corrections")
        return []
    return [normalize_correction(item) for item in items if isinstance(item, Mapping)]
