"""
Advisor Client — OpenAI-compatible chat-completions endpoint.

Configure in .env:
  ADVISOR_API_URL=https://api.openai.com/v1/chat/completions
  ADVISOR_API_KEY=<key>
  ADVISOR_MODEL=gpt-4.1

get_decision() either returns a validated AdvisorResult or raises:
  ExternalCallFailure  HTTP error, timeout, empty completion
  ValidationError      the completion holds no JSON object at all

Field-level problems never raise. A missing or malformed field takes its
safe default (action HOLD, confidence 0, size 1) and is listed in
defaulted_fields.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import requests
from dotenv import load_dotenv

from ..errors import ExternalCallFailure, ValidationError
from ..strategy import engine_config as cfg
from ..strategy.pattern_detector import Action
from .advisor_prompt import SYSTEM_PROMPT, AdvisorContext, build_prompt

logger = logging.getLogger(__name__)

_ROOT = Path(__file__).parents[2]
load_dotenv(_ROOT / ".env")

DEFAULT_API_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_MODEL = "gpt-4.1"

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


@dataclass
class AdvisorResult:
    action:           Action
    confidence:       float
    size_percent:     float
    reasoning:        str
    expected_outcome: str
    raw:              str = ""
    defaulted_fields: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "action":           self.action.value,
            "confidence":       round(self.confidence, 2),
            "size_percent":     self.size_percent,
            "reasoning":        self.reasoning,
            "expected_outcome": self.expected_outcome,
            "defaulted_fields": self.defaulted_fields,
        }


def _number(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().rstrip("%"))
        except ValueError:
            return None
    return None


def parse_advisor_response(content: str) -> AdvisorResult:
    """Validate a completion field by field. Raises ValidationError only if no JSON object parses."""
    match = _JSON_OBJECT.search(content or "")
    if not match:
        raise ValidationError("advisor response contains no JSON object")
    try:
        data = json.loads(match.group(0))
    except ValueError as exc:
        raise ValidationError(f"advisor JSON does not parse: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("advisor JSON is not an object")

    defaulted: List[str] = []

    raw_action = str(data.get("action", "")).strip().upper()
    try:
        action = Action(raw_action)
    except ValueError:
        action = Action.HOLD
        defaulted.append("action")

    confidence = _number(data.get("confidence"))
    if confidence is None:
        confidence = 0.0
        defaulted.append("confidence")
    confidence = max(0.0, min(100.0, confidence))

    size = _number(data.get("volume_percent", data.get("size_percent")))
    if size is None or size <= 0:
        size = cfg.ADVISOR_MIN_SIZE_PERCENT
        defaulted.append("volume_percent")
    size = max(cfg.ADVISOR_MIN_SIZE_PERCENT, min(cfg.ADVISOR_MAX_SIZE_PERCENT, size))

    reasoning = data.get("reasoning")
    if not isinstance(reasoning, str) or not reasoning.strip():
        reasoning = "No reasoning provided"
        defaulted.append("reasoning")

    expected = data.get("expected_outcome")
    if not isinstance(expected, str) or not expected.strip():
        expected = "Unknown"
        defaulted.append("expected_outcome")

    if defaulted:
        logger.warning(f"advisor: defaulted fields {defaulted}")

    return AdvisorResult(
        action=action,
        confidence=confidence,
        size_percent=size,
        reasoning=reasoning,
        expected_outcome=expected,
        raw=content,
        defaulted_fields=defaulted,
    )


class AdvisorClient:
    """
    Parameters
    ----------
    api_url, api_key, model : str
        Override the .env values.
    timeout : int
        Seconds before the HTTP call is abandoned.
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: int = cfg.ADVISOR_TIMEOUT_SECONDS,
    ):
        self.api_url = api_url or os.getenv("ADVISOR_API_URL", DEFAULT_API_URL)
        self.api_key = api_key or os.getenv("ADVISOR_API_KEY")
        self.model   = model   or os.getenv("ADVISOR_MODEL", DEFAULT_MODEL)
        self.timeout = timeout

        if not self.api_key:
            logger.warning("AdvisorClient: ADVISOR_API_KEY not set — every call will fall back.")

    def get_decision(self, context: AdvisorContext) -> AdvisorResult:
        if not self.api_key:
            raise ExternalCallFailure("ADVISOR_API_KEY not set")

        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user",   "content": build_prompt(context)},
            ],
            "temperature": cfg.ADVISOR_TEMPERATURE,
            "max_tokens":  cfg.ADVISOR_MAX_TOKENS,
        }
        try:
            resp = requests.post(
                self.api_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type":  "application/json",
                },
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ExternalCallFailure(f"advisor request failed: {exc}") from exc

        if resp.status_code != 200:
            logger.error(f"POST advisor → {resp.status_code}: {resp.text[:300]}")
            raise ExternalCallFailure(f"advisor returned HTTP {resp.status_code}")

        try:
            content = resp.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ExternalCallFailure(f"advisor completion missing content: {exc}") from exc

        logger.debug(f"advisor response: {content}")
        return parse_advisor_response(content)
