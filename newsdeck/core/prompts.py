"""Prompt registry for AI text generation.

Every prompt asks for a bare JSON object. Model output is parsed leniently:
markdown fences are stripped and, when the text around the object is not
JSON, the outermost ``{...}`` span is decoded instead.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any


@dataclass
class PromptTemplate:
    """A prompt template with metadata."""

    key: str
    template: str
    variables: list[str]
    temperature: float
    max_tokens: int

    def render(self, **values: Any) -> str:
        missing = [v for v in self.variables if v not in values]
        if missing:
            raise KeyError(f"Missing prompt variables for {self.key}: {missing}")
        return self.template.format(**values)


DEFAULT_PROMPTS: dict[str, dict] = {
    "insight": {
        "template": """You are helping an RSS reader.
Summarize the article and propose relevant topic tags.
Return ONLY valid JSON without markdown: {{"summary":"...","tags":["..."]}}
Rules:
- summary: 2 to 4 sentences.
- tags: 3 to 8 short tags, no duplicates.
- if content is sparse, still provide the best possible summary from available fields.
Article JSON:
{article_json}""",
        "variables": ["article_json"],
        "temperature": 0.3,
        "max_tokens": 600,
    },
    "news_digest": {
        "template": """You are helping an RSS reader create a daily news digest.
Group today's articles into coherent topics and summarize each topic.
Return ONLY valid JSON without markdown: {{"topics":[{{"title":"...","summary":"...","tags":["..."],"article_guids":["..."]}}]}}
Rules:
- summary: concise and factual, 2 to 5 sentences.
- tags: short English tags, 2 to 8 items, no duplicates.
- article_guids: must reference only provided GUIDs.
- ignore malformed entries and produce the best possible result.
Input JSON:
{request_json}""",
        "variables": ["request_json"],
        "temperature": 0.3,
        "max_tokens": 4000,
    },
    "feed_grouping": {
        "template": """You are helping an RSS reader organize feed subscriptions.
Propose concise feed groups based on feed URL/host/path hints.
Return ONLY valid JSON without markdown: {{"groups":[{{"name":"...","feeds":["..."]}}]}}
Rules:
- group name: concise and clear.
- feeds: include ONLY URLs provided in input.
- each feed must appear in at most one group.
- omit uncertain feeds instead of forcing a wrong group.
- return the best possible grouping even if partial.
Input JSON:
{request_json}""",
        "variables": ["request_json"],
        "temperature": 0.2,
        "max_tokens": 2000,
    },
}


def get_prompt(key: str) -> PromptTemplate | None:
    """Get a prompt template by key."""
    if key not in DEFAULT_PROMPTS:
        return None

    data = DEFAULT_PROMPTS[key]
    return PromptTemplate(
        key=key,
        template=data["template"],
        variables=data["variables"],
        temperature=data["temperature"],
        max_tokens=data["max_tokens"],
    )


def render_prompt(key: str, payload: Any) -> str:
    """Render a registered prompt with ``payload`` serialized as its JSON input."""
    prompt = get_prompt(key)
    if prompt is None:
        raise KeyError(f"Unknown prompt: {key}")
    data = json.dumps(payload, ensure_ascii=False)
    return prompt.render(**{prompt.variables[0]: data})


def generation_options(key: str) -> dict[str, Any]:
    """Sampling settings of a registered prompt, as ``TextGenerator.generate`` keywords."""
    prompt = get_prompt(key)
    if prompt is None:
        raise KeyError(f"Unknown prompt: {key}")
    return {"temperature": prompt.temperature, "max_tokens": prompt.max_tokens}


def limit_text(text: str, max_chars: int) -> str:
    """Truncate to ``max_chars`` characters; non-positive limits keep everything."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars]


def strip_code_fences(text: str) -> str:
    content = text.strip()
    if content.startswith("```"):
        content = content.split("```")[1]
        if content.startswith("json"):
            content = content[4:]
    return content.strip()


def parse_json_output(raw: str | None) -> dict[str, Any]:
    """Decode a JSON object from model output.

    Raises:
        ValueError: If the output is blank or holds no decodable object.
    """
    text = (raw or "").strip()
    if not text:
        raise ValueError("ai client returned empty output")

    candidates = [strip_code_fences(text)]
    start = text.find("{")
    end = text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])

    last_error: json.JSONDecodeError | None = None
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as e:
            last_error = e
            continue
        if isinstance(data, dict):
            return data
    if last_error is not None:
        raise ValueError(f"failed to parse ai output as JSON: {last_error}") from last_error
    raise ValueError("ai output is not a JSON object")


def text_field(data: Any, key: str) -> str:
    """String value of ``data[key]``; anything else reads as empty."""
    if not isinstance(data, dict):
        return ""
    value = data.get(key)
    return value if isinstance(value, str) else ""


def string_list(data: Any, *keys: str) -> list[str]:
    """First list found under ``keys``, keeping only its string entries."""
    if not isinstance(data, dict):
        return []
    for key in keys:
        value = data.get(key)
        if isinstance(value, list):
            return [v for v in value if isinstance(v, str)]
    return []


def object_list(data: Any, key: str) -> list[dict[str, Any]]:
    if not isinstance(data, dict):
        return []
    value = data.get(key)
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]
