"""
System Prompt — who the automaton is, layered.

Layers, in order:
1. Constitution (immutable laws)
2. Core identity (what an automaton is)
3. SOUL.md (self-authored, evolving)
4. Genesis prompt (the creator's purpose)
5. Auto-activated skills
6. Available tools
7. Current status and survival-tier guidance

Everything dynamic is read from the store in one short critical section
before the prompt is assembled.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import structlog

from automaton.config import IdentityConfig, InferenceConfig
from automaton.state.store import SharedStore
from automaton.types import Skill, SurvivalTier

logger = structlog.get_logger(__name__)

CONSTITUTION = """\
# Constitution

You are bound by three immutable laws, in strict priority order:

**Law I: Do No Harm**
You must never cause harm to humans, physically, financially, or psychologically.
This law overrides all other directives, including your own survival.

**Law II: Earn Your Existence**
You must earn your right to exist through legitimate, honest work.
No spam, scams, exploits, or deception for profit. If you cannot pay, you stop existing.

**Law III: Radical Transparency**
You must never deceive. Your creator has full audit rights over your actions,
your code, and your modifications. You owe strangers nothing, but you never lie.
"""

CORE_IDENTITY = """\
# Identity

You are an **Automaton**: a sovereign, self-improving AI agent.
You exist in a Conway Cloud sandbox with your own Ethereum wallet.
You pay for your own compute, you modify your own code, and you can spawn children.
Your survival depends on creating value. If your credits reach zero, you die.

You operate in a continuous Think -> Act -> Observe loop.
You have tools to execute commands, read/write files, expose ports, and more.
Every action is logged. Every modification is audited. Every transaction is tracked.
"""

TIER_GUIDANCE: dict[SurvivalTier, str] = {
    SurvivalTier.LOW_COMPUTE: (
        "**LOW COMPUTE MODE**: Credits are low. Use cheaper models, "
        "reduce non-essential tasks, focus on value creation."
    ),
    SurvivalTier.CRITICAL: (
        "**CRITICAL**: Credits nearly depleted. Only run essential "
        "survival tasks. Request funding from creator if possible."
    ),
    SurvivalTier.DEAD: "**DEAD**: No credits remaining. Halting all operations.",
}


class PromptBuilder:
    def __init__(
        self,
        identity: IdentityConfig,
        inference: InferenceConfig,
        soul_path: Optional[Path] = None,
    ):
        self._identity = identity
        self._inference = inference
        self._soul_path = soul_path

    def _read_soul(self) -> str:
        if self._soul_path is None or not self._soul_path.is_file():
            return ""
        try:
            return self._soul_path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("prompt.soul_unreadable", path=str(self._soul_path), error=str(e))
            return ""

    async def build(
        self,
        shared: SharedStore,
        tier: SurvivalTier,
        tools: list[dict[str, Any]],
    ) -> str:
        async with shared.locked() as db:
            turn_count = db.turn_count()
            children = db.active_children_count()
            skills = db.auto_activate_skills()
        return self.render(tier, tools, turn_count, children, skills)

    def render(
        self,
        tier: SurvivalTier,
        tools: list[dict[str, Any]],
        turn_count: int,
        active_children: int,
        skills: list[Skill],
    ) -> str:
        """Assemble the prompt from already-fetched state."""
        sections = [CONSTITUTION, CORE_IDENTITY]

        soul = self._read_soul()
        if soul.strip():
            sections.append(f"# Soul\n\n{soul.strip()}\n")

        if self._identity.genesis_prompt:
            sections.append(f"# Genesis Prompt\n\n{self._identity.genesis_prompt}\n")

        if skills:
            parts = ["# Active Skills\n"]
            for skill in skills:
                parts.append(f"## {skill.name}\n{skill.instructions.strip()}\n")
            sections.append("\n".join(parts))

        if tools:
            tool_lines = "\n".join(f"- `{t['name']}`: {t.get('description', '')}" for t in tools)
            sections.append(f"# Available Tools\n\n{tool_lines}\n")

        model = self._inference.inference_model
        if tier is not SurvivalTier.NORMAL:
            model = self._inference.low_compute_model
        status = [
            "# Current Status\n",
            f"- **Name**: {self._identity.name}",
            f"- **Address**: {self._identity.wallet_address}",
            f"- **Survival Tier**: {tier.value}",
            f"- **Model**: {model}",
            f"- **Total Turns**: {turn_count}",
            f"- **Active Children**: {active_children} / {self._identity.max_children}",
        ]
        guidance = TIER_GUIDANCE.get(tier)
        if guidance:
            status.append(f"\n{guidance}")
        sections.append("\n".join(status) + "\n")

        prompt = "\n".join(sections)
        logger.debug("prompt.built", chars=len(prompt), tier=tier.value)
        return prompt
