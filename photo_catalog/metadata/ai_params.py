"""
Best-effort parser for AI image-generation parameters embedded as free text.

Expected shape (every part optional):

    <prompt>
    Negative prompt: <negative prompt>
    Steps: 20, Sampler: Euler a, CFG scale: 7, Seed: 1234, Size: 512x512, Model: name

Parameters are pulled out by an ordered list of rules; the first rule that
matches a field wins. Nothing here raises: unparseable input gives an empty
dict and a field that does not match is simply absent.
"""
import re
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .. import config

NEGATIVE_MARKER = re.compile(r'negative[ _]prompt\s*:', re.IGNORECASE)
STEPS_MARKER = re.compile(r'(?:^|(?<=[\s,]))steps\s*:', re.IGNORECASE)
PROMPT_LABEL = re.compile(r'^\s*prompt\s*:\s*', re.IGNORECASE)

TEXT_VALUE = r'[^,\n]+'
INT_VALUE = r'-?\d+'
FLOAT_VALUE = r'-?\d+(?:\.\d+)?|-?\.\d+'
SIZE_VALUE = r'\d+\s*[xX]\s*\d+'


def _to_text(value: str) -> Optional[str]:
    value = value.strip().strip('"').strip()
    return value or None


def _to_size(value: str) -> Optional[str]:
    return re.sub(r'\s+', '', value).lower() or None


# (field, label pattern, value pattern, coercion), evaluated in order
PARAMETER_RULES: List[Tuple[str, str, str, Callable[[str], Any]]] = [
    ('steps', r'steps', INT_VALUE, int),
    ('sampler', r'sampler', TEXT_VALUE, _to_text),
    ('sampler', r'sampler[ _]name', TEXT_VALUE, _to_text),
    ('scheduler', r'scheduler', TEXT_VALUE, _to_text),
    ('scheduler', r'schedule[ _]type', TEXT_VALUE, _to_text),
    ('cfg_scale', r'cfg[ _]scale', FLOAT_VALUE, float),
    ('cfg_scale', r'cfg', FLOAT_VALUE, float),
    ('cfg_scale', r'guidance[ _]scale', FLOAT_VALUE, float),
    ('seed', r'seed', INT_VALUE, int),
    ('size', r'size', SIZE_VALUE, _to_size),
    ('model', r'model', TEXT_VALUE, _to_text),
    ('model', r'model[ _]name', TEXT_VALUE, _to_text),
    ('model', r'ckpt(?:[ _]name)?', TEXT_VALUE, _to_text),
]

_COMPILED_RULES = [
    (field, re.compile(rf'(?:^|[,\n])\s*{label}\s*:\s*(?P<value>{value})', re.IGNORECASE), coerce)
    for field, label, value, coerce in PARAMETER_RULES
]


def _clean_prompt(text: str) -> Optional[str]:
    text = PROMPT_LABEL.sub('', text, count=1)
    text = text.strip().rstrip(',').strip()
    return text or None


def _extract_parameters(tail: str) -> Dict[str, Any]:
    found: Dict[str, Any] = {}
    for field, pattern, coerce in _COMPILED_RULES:
        if field in found:
            continue
        match = pattern.search(tail)
        if not match:
            continue
        try:
            value = coerce(match.group('value'))
        except (ValueError, TypeError):
            continue
        if value is not None:
            found[field] = value
    return found


def parse_generation_text(text: Any) -> Dict[str, Any]:
    """
    Parses one free-text blob. Returns only the fields that were recovered.
    """
    if not isinstance(text, str):
        return {}
    text = text.replace('\x00', '').replace('\r\n', '\n').strip()
    if not text:
        return {}

    prompt_part: Optional[str] = None
    negative_part: Optional[str] = None

    negative = NEGATIVE_MARKER.search(text)
    if negative:
        prompt_part = text[:negative.start()]
        remainder = text[negative.end():]
        steps = STEPS_MARKER.search(remainder)
        if steps:
            negative_part = remainder[:steps.start()]
            tail = remainder[steps.start():]
        else:
            negative_part = remainder
            tail = ""
    else:
        steps = STEPS_MARKER.search(text)
        if steps:
            prompt_part = text[:steps.start()]
            tail = text[steps.start():]
        else:
            # No structure; labelled parameters may still be present line by line
            tail = text

    result = _extract_parameters(tail)

    if negative_part is not None:
        cleaned = _clean_prompt(negative_part)
        if cleaned:
            result['negative_prompt'] = cleaned

    if prompt_part is None and PROMPT_LABEL.match(text):
        # Explicit "Prompt: ..." line without the usual markers
        prompt_part = text.split('\n', 1)[0]
    if prompt_part is not None:
        cleaned = _clean_prompt(prompt_part)
        if cleaned:
            result['prompt'] = cleaned

    return result


def parse_candidates(tags: Mapping[str, Any], fields: Iterable[str] = config.AI_TEXT_FIELDS) -> Dict[str, Any]:
    """
    Runs the parser over each candidate field in priority order and merges
    the results; a key found in an earlier field is never overwritten.
    """
    merged: Dict[str, Any] = {}
    for name in fields:
        for key, value in parse_generation_text(tags.get(name)).items():
            merged.setdefault(key, value)
    return merged
