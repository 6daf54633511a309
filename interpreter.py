"""
Free-text interpretation backends.

An interpreter takes raw text, a field catalog and an optional context hint,
and returns a catalog of the same length and order with values filled in
where the text implied one. It never removes fields or reorders them.
"""

import json
import logging
import os
import re
from typing import Any, Callable, Dict, List, Optional

from openai import OpenAI, OpenAIError

from errors import InterpretationError
from fields import FieldCatalog, FieldType

logger = logging.getLogger(__name__)

Interpreter = Callable[[str, FieldCatalog, Optional[str]], FieldCatalog]

DEFAULT_MODEL = "gpt-4o"

SYSTEM_PROMPT = """You are a medical form assistant for an Eye Care Electronic Health Record system. Your task is to extract information from user input to fill form fields.

IMPORTANT: When filling fields, use the exact field name including dot notation for nested fields (e.g., "vision.rightEye.uncorrected").

Form Fields:
{fields}

{context}
1. Extract all relevant information from the user input.
2. Return ONLY a valid JSON object where keys match the exact field names and values are appropriate for each field type.
3. For fields not mentioned in the input, exclude them from the response.
4. Be precise with medical terminology related to ophthalmology.

Example format:
{{
  "chiefComplaint": "Blurry vision in right eye",
  "vision.rightEye.uncorrected": "20/40",
  "vision.leftEye.uncorrected": "20/20",
  "intraocularPressure.rightEye": 18
}}
"""


def describe_fields(catalog: FieldCatalog) -> str:
    lines = []
    for d in catalog:
        options = ""
        if d.options:
            options = ", options: [" + ", ".join(f'"{o.label}"' for o in d.options) + "]"
        lines.append(f"- {d.label} ({d.path}): {d.type.value}{options}")
    return "\n".join(lines)


def _flatten_reply(obj: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in obj.items():
        name = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            out.update(_flatten_reply(value, name))
        else:
            out[name] = value
    return out


def parse_reply(content: Optional[str]) -> Dict[str, Any]:
    """Dotted-key mapping from a model reply, tolerating code fences and chatter."""
    if not content:
        raise InterpretationError("Empty response from interpretation model")
    fenced = re.search(r"```(?:json)?\s*\n(.*?)\n```", content, re.DOTALL)
    text = (fenced.group(1) if fenced else content).strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}") + 1
        if start < 0 or end <= start:
            raise InterpretationError("Failed to parse interpretation response as JSON")
        try:
            parsed = json.loads(text[start:end])
        except json.JSONDecodeError as e:
            raise InterpretationError("Failed to parse interpretation response as JSON") from e
    if not isinstance(parsed, dict):
        raise InterpretationError("Interpretation response is not a JSON object")
    return _flatten_reply(parsed)


def fill_catalog(catalog: FieldCatalog, values: Dict[str, Any]) -> FieldCatalog:
    """Copy of `catalog` with values set for the paths present in `values`."""
    filled = []
    for d in catalog:
        value = values.get(d.path, values.get(d.id))
        if value is None or value == "":
            filled.append(d.model_copy())
        else:
            filled.append(d.model_copy(update={"value": value}))
    return filled


class OpenAIInterpreter:
    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None):
        self.client = client or OpenAI(api_key=os.getenv("OPENAI_API_KEY"))
        self.model = model or os.getenv("OPENAI_MODEL", DEFAULT_MODEL)

    def __call__(self, text: str, catalog: FieldCatalog, context_hint: Optional[str] = None) -> FieldCatalog:
        prompt = SYSTEM_PROMPT.format(
            fields=describe_fields(catalog),
            context=f"Additional Context: {context_hint}\n" if context_hint else "",
        )
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": prompt},
                    {"role": "user", "content": text},
                ],
                temperature=0.1,
                max_tokens=1000,
                response_format={"type": "json_object"},
            )
        except OpenAIError as e:
            logger.warning("Interpretation request failed: %s", e)
            raise InterpretationError(str(e)) from e

        values = parse_reply(response.choices[0].message.content)
        return fill_catalog(catalog, values)


_ACUITY = r"(20/\d{2,3})"
_EYE = r"(OD|OS|right eye|left eye)"
_EYE_KEYS = {"od": "rightEye", "right eye": "rightEye", "os": "leftEye", "left eye": "leftEye"}
_STOP = r"(?=\s+(?:for|since)\b|[.;\n]|$)"


def _eye(token: str) -> str:
    return _EYE_KEYS[token.lower()]


class KeywordInterpreter:
    """Offline rules for eye examination text.

    Recognises acuity ("20/40 OD", "OS 20/20", "20/25 cc OD"), pressures
    ("IOP is 18 OD, 16 OS"), complaints ("patient reports blurry vision") and
    "<field label>: <value>" phrases for any other catalog field.
    """

    def __call__(self, text: str, catalog: FieldCatalog, context_hint: Optional[str] = None) -> FieldCatalog:
        values = self.extract(text)
        filled = []
        for d in catalog:
            value = values.get(d.path)
            if value is None and d.type != FieldType.NUMBER:
                value = self._labelled(text, d.label)
            filled.append(d.model_copy(update={"value": value}) if value is not None else d.model_copy())
        return filled

    def extract(self, text: str) -> Dict[str, Any]:
        values: Dict[str, Any] = {}

        corrected = [
            (_eye(m.group(2)), m.group(1))
            for m in re.finditer(_ACUITY + r"\s*(?:cc|with correction)\s+" + _EYE + r"\b", text, re.I)
        ]
        for eye, acuity in corrected:
            values.setdefault(f"vision.{eye}.corrected", acuity)

        for m in re.finditer(_ACUITY + r"\s*(?:sc\s+)?" + _EYE + r"\b", text, re.I):
            values.setdefault(f"vision.{_eye(m.group(2))}.uncorrected", m.group(1))
        for m in re.finditer(_EYE + r"\s+(?:is\s+)?" + _ACUITY + r"(?!\s*(?:cc|with correction))", text, re.I):
            values.setdefault(f"vision.{_eye(m.group(1))}.uncorrected", m.group(2))
        for m in re.finditer(_ACUITY + r"\s*(?:ph|pinhole)\s+" + _EYE + r"\b", text, re.I):
            values.setdefault(f"vision.{_eye(m.group(2))}.pinhole", m.group(1))

        for segment in re.findall(r"(?:IOP|pressures?)\b((?:[^.;\n]|\.(?=\d))*)", text, re.I):
            for m in re.finditer(r"(\d{1,2}(?:\.\d+)?)\s*(?:mm\s*Hg\s*)?" + _EYE + r"\b", segment, re.I):
                values.setdefault(f"intraocularPressure.{_eye(m.group(2))}", float(m.group(1)))

        complaint = (
            re.search(r"chief complaint\s*(?:is|:)?\s*(.+?)" + _STOP, text, re.I)
            or re.search(r"\b(?:reports|complains of|complaining of|presents with)\s+(.+?)" + _STOP, text, re.I)
        )
        if complaint:
            values["chiefComplaint"] = complaint.group(1).strip()

        follow_up = re.search(
            r"\b(?:follow[- ]?up|return|rtc)\s+(?:in\s+)?(\d+\s+(?:days?|weeks?|months?|years?))", text, re.I
        )
        if follow_up:
            values["followUp"] = follow_up.group(1)
        return values

    @staticmethod
    def _labelled(text: str, label: str) -> Optional[str]:
        m = re.search(r"\b" + re.escape(label) + r"\s*(?:is|:)\s*(.+?)(?=[;\n]|\.(?:\s|$)|$)", text, re.I)
        return m.group(1).strip() if m else None


def get_interpreter() -> Interpreter:
    if os.getenv("OPENAI_API_KEY"):
        return OpenAIInterpreter()
    logger.warning("OPENAI_API_KEY not set; using keyword interpreter")
    return KeywordInterpreter()
