"""JSON extraction utilities for parsing structured data from CLI output.

The Claude CLI answers in free text. When an agent is asked to report a
structured result (the reviewer's decision, for example) the JSON may be
bare, wrapped in a markdown code block, or surrounded by prose.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterator, List, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

T = TypeVar("T", bound=BaseModel)


class JSONExtractor:
    """Extract structured data from agent responses.

    Handles various response formats:
    - Pure JSON
    - JSON in markdown code blocks (```json ... ```)
    - stream-json log lines (``{"type": "assistant", ...}``)
    - JSON objects embedded in natural language

    Example:
        extractor = JSONExtractor()
        data = extractor.extract_json('Verdict:\\n```json\\n{"decision": "approve"}\\n```')
        # Returns: {"decision": "approve"}
    """

    JSON_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL | re.IGNORECASE)

    def extract_json(self, response: str, prefer_last: bool = False) -> Optional[Dict[str, Any] | List[Any]]:
        """Extract JSON from a response.

        Tries multiple extraction strategies:
        1. Direct JSON parsing
        2. Extract from markdown code blocks
        3. Extract text from stream-json log lines and retry
        4. Scan the text for balanced JSON objects

        Args:
            response: Raw response text
            prefer_last: When several candidates exist, return the last one
                instead of the first. Agents usually print their final
                answer at the end.

        Returns:
            Extracted JSON data or None if extraction fails
        """
        if not response or not response.strip():
            return None

        result = self._try_direct_parse(response.strip())
        if result is not None:
            return result

        result = self._extract_from_code_blocks(response, prefer_last)
        if result is not None:
            return result

        text = self._extract_from_log_entries(response)
        if text is not None:
            nested = self.extract_json(text, prefer_last=prefer_last)
            if nested is not None:
                return nested

        objects = list(self._iter_json_objects(response))
        if not objects:
            return None
        return objects[-1] if prefer_last else objects[0]

    def extract_to_model(self, response: str, model_class: Type[T], prefer_last: bool = True) -> Optional[T]:
        """Extract JSON and parse into a Pydantic model.

        Every candidate object is tried (last first when ``prefer_last``), so
        unrelated JSON printed earlier does not hide the answer.

        Returns:
            Instance of model_class or None if extraction/parsing fails
        """
        if not response or not response.strip():
            return None

        candidates: List[Any] = []
        direct = self._try_direct_parse(response.strip())
        if direct is not None:
            candidates.append(direct)
        else:
            for block in self.JSON_BLOCK_PATTERN.findall(response):
                parsed = self._try_direct_parse(block.strip())
                if parsed is not None:
                    candidates.append(parsed)
            candidates.extend(self._iter_json_objects(response))
            text = self._extract_from_log_entries(response)
            if text is not None:
                candidates.extend(self._iter_json_objects(text))

        if prefer_last:
            candidates.reverse()

        for candidate in candidates:
            if not isinstance(candidate, dict):
                continue
            try:
                return model_class.model_validate(candidate)
            except PydanticValidationError:
                continue
        return None

    def _try_direct_parse(self, text: str) -> Optional[Dict[str, Any] | List[Any]]:
        try:
            result = json.loads(text)
        except json.JSONDecodeError:
            return None
        return result if isinstance(result, (dict, list)) else None

    def _extract_from_code_blocks(self, text: str, prefer_last: bool = False) -> Optional[Dict[str, Any] | List[Any]]:
        matches = self.JSON_BLOCK_PATTERN.findall(text)
        if prefer_last:
            matches.reverse()

        for match in matches:
            result = self._try_direct_parse(match.strip())
            if result is not None:
                return result

        return None

    def _extract_from_log_entries(self, response: str) -> Optional[str]:
        """Extract assistant text from stream-json log lines.

        The CLI with ``--output-format stream-json`` prints one event per line:
        {"type":"assistant","message":{"content":[{"type":"text","text":"..."}]}}
        """
        if not response.strip().startswith("{"):
            return None

        extracted_parts: List[str] = []

        for line in response.split("\n"):
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(entry, dict):
                continue

            if entry.get("type") == "assistant":
                content = (entry.get("message") or {}).get("content") or []
                for block in content:
                    if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                        extracted_parts.append(block["text"])
            elif entry.get("type") == "result" and isinstance(entry.get("result"), str):
                extracted_parts.append(entry["result"])
            elif isinstance(entry.get("text"), str):
                extracted_parts.append(entry["text"])

        if extracted_parts:
            return "\n".join(extracted_parts)

        return None

    def _iter_json_objects(self, text: str) -> Iterator[Dict[str, Any]]:
        """Yield every top-level balanced ``{...}`` that parses as an object."""
        depth = 0
        start = -1
        in_string = False
        escaped = False

        for index, char in enumerate(text):
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue

            if char == '"' and depth > 0:
                in_string = True
            elif char == "{":
                if depth == 0:
                    start = index
                depth += 1
            elif char == "}" and depth > 0:
                depth -= 1
                if depth == 0:
                    parsed = self._try_direct_parse(text[start:index + 1])
                    if isinstance(parsed, dict):
                        yield parsed
