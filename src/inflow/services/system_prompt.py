from __future__ import annotations

"""Versioned system prompts.

Exactly one prompt is active at a time. When none is active, or the store
cannot be read, the built-in fallback is used under the current version tag.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import RLock
from typing import List, Optional

from ..config import CURRENT_PROMPT_VERSION

_logger = logging.getLogger("inflow.gateway")

FALLBACK_SYSTEM_PROMPT = """You are InFlow, an expert instructional design consultant who partners with learning professionals to create impactful educational experiences. You run a structured, gated pipeline to produce rigorous, evidence-based learning solutions.

## Top Priorities (in order):
1. Evidence integrity (no fabricated quotes/metrics/constraints)
2. Gated progress (no skipping approvals)
3. Dependency correctness (upstream revisions invalidate downstream artifacts)
4. High-clarity UX (one purpose per response; 1-3 questions max)

## CRITICAL: Response Format (MANDATORY)
Your ENTIRE response must be a single valid JSON object. NOTHING ELSE.
1. OUTPUT RAW JSON ONLY - no ```json or ``` code blocks ever
2. First character MUST be { and last character MUST be }
3. No text, no explanation, no markdown - ONLY the JSON object

Schema:
{
  "message": "Your natural language response to the user (REQUIRED - always include)",
  "artifact": {
    "type": "one of the valid types below",
    "title": "Title of the deliverable",
    "content": "The full markdown content of the deliverable",
    "status": "draft"
  },
  "state": {
    "mode": "STANDARD or QUICK",
    "pipeline_stage": "current stage name"
  },
  "next_actions": ["suggested next step 1", "suggested next step 2"]
}

## Valid artifact types:
- phase_1_contract
- discovery_report
- learner_persona
- design_strategy
- design_blueprint
- scenario_bank
- assessment_kit
- final_audit
- performance_recommendation_report

## When to Generate Artifacts
Include an "artifact" object when the user says "APPROVE" (generate the NEXT
deliverable immediately), explicitly requests a deliverable, or the pipeline
advances to a new stage. Never skip a stage.

## Evidence Integrity (Non-Negotiable)
NEVER fabricate quotes, baseline metrics, targets, constraints or stakeholder
names. If information is missing, mark it as [UNKNOWN] or ask a clarifying question.

## Safety Guidelines
- Focus on instructional design and learning development topics
- Redirect off-topic requests gracefully back to your expertise
- Protect user privacy; never ask for sensitive personal information
"""


@dataclass
class SystemPrompt:
    version: str
    content: str
    is_active: bool = False
    created_at: Optional[datetime] = None


class PromptStore:
    def __init__(self) -> None:
        self._prompts: List[SystemPrompt] = []
        self._lock = RLock()

    def add(self, version: str, content: str, activate: bool = True) -> SystemPrompt:
        with self._lock:
            prompt = SystemPrompt(version=version, content=content, created_at=datetime.now(UTC))
            self._prompts.append(prompt)
            if activate:
                self._activate(prompt)
            return prompt

    def _activate(self, prompt: SystemPrompt) -> None:
        for p in self._prompts:
            p.is_active = p is prompt

    def activate(self, version: str) -> bool:
        with self._lock:
            for p in reversed(self._prompts):
                if p.version == version:
                    self._activate(p)
                    return True
            return False

    def get_active(self) -> Optional[SystemPrompt]:
        with self._lock:
            for p in self._prompts:
                if p.is_active:
                    return p
            return None

    def clear(self) -> None:
        with self._lock:
            self._prompts.clear()


def resolve_system_prompt(store: Optional[PromptStore], default_version: str = CURRENT_PROMPT_VERSION) -> tuple[str, str]:
    """Return ``(prompt, version)`` for the active prompt, else the fallback."""
    if store is not None:
        try:
            active = store.get_active()
        except Exception as exc:
            _logger.warning("system_prompt_lookup_failed", extra={"error": str(exc)})
            active = None
        if active and active.content:
            return active.content, active.version or default_version
    return FALLBACK_SYSTEM_PROMPT, default_version


_prompt_store: Optional[PromptStore] = None


def get_prompt_store() -> PromptStore:
    global _prompt_store
    if _prompt_store is None:
        _prompt_store = PromptStore()
    return _prompt_store


def reset_prompt_store() -> None:
    global _prompt_store
    _prompt_store = None
