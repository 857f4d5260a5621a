"""Helpers for the JSON blobs YouTube embeds in its HTML.

Both the search results page (``ytInitialData``) and the about page
carry their real data as JavaScript object literals inside ``<script>``
tags. These helpers pull them out without a JS engine.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)

_decoder = json.JSONDecoder()


def extract_json_after(html: str, marker: str) -> Optional[Any]:
    """Decode the JSON value that starts right after ``marker``.

    Returns None when the marker is missing or the value doesn't decode.
    """
    start = html.find(marker)
    if start == -1:
        return None
    start += len(marker)
    # Skip whitespace and an optional "=" between marker and value
    while start < len(html) and html[start] in " \t\r\n=":
        start += 1
    try:
        value, _ = _decoder.raw_decode(html, start)
    except json.JSONDecodeError as exc:
        logger.debug("Could not decode JSON after %r: %s", marker, exc)
        return None
    return value


def extract_string_value(html: str, key: str) -> Optional[str]:
    """Return the string value of ``"key":"..."`` anywhere in the page."""
    match = re.search(r'"%s"\s*:\s*"([^"]+)"' % re.escape(key), html)
    return match.group(1) if match else None


def iter_key(data: Any, key: str) -> Iterator[Any]:
    """Yield every value stored under ``key`` in a nested JSON structure.

    Depth-first, in document order.
    """
    stack = [data]
    while stack:
        node = stack.pop()
        if isinstance(node, dict):
            if key in node:
                yield node[key]
            stack.extend(reversed(list(node.values())))
        elif isinstance(node, list):
            stack.extend(reversed(node))


def find_key(data: Any, key: str) -> Optional[Any]:
    """First value stored under ``key``, or None."""
    return next(iter_key(data, key), None)


def runs_text(node: Any) -> str:
    """Flatten a ``{"simpleText": ...}`` / ``{"runs": [...]}`` text node."""
    if not isinstance(node, dict):
        return node if isinstance(node, str) else ""
    if isinstance(node.get("simpleText"), str):
        return node["simpleText"]
    if "content" in node and isinstance(node["content"], str):
        return node["content"]
    runs = node.get("runs")
    if not isinstance(runs, list):
        return ""
    return "".join(
        run["text"] for run in runs if isinstance(run, dict) and isinstance(run.get("text"), str)
    )
