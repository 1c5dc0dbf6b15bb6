"""
Prompt construction for the reasoning oracle.

Prompts are plain text split into ``## SECTION`` blocks. The Claude oracle
sends them verbatim; the heuristic oracle reads the sections back with
``parse_sections``. Keeping one format for both means a scripted oracle in a
test sees exactly what a model would.
"""

from __future__ import annotations

from cogloop.types import CognitiveContext, ConsolidationResult, MemoryState

MODE_REASON = "reason"
MODE_EXPLORE = "explore"
MODE_ANSWER = "answer"


def _section(name: str, body: str) -> str:
    return f"## {name}\n{body.strip()}"


def _memory_line(state: MemoryState) -> str:
    counts = " ".join(f"{layer}={count}" for layer, count in sorted(state.layer_counts.items()))
    return (
        f"{counts or 'empty'} working_set={state.working_set_size} "
        f"load={state.load_factor:.2f}"
    )


def build_reasoning_prompt(query: str, context: CognitiveContext) -> str:
    return "\n\n".join(
        [
            _section("MODE", MODE_REASON),
            _section("QUERY", query),
            _section("MEMORY", _memory_line(context.memory_state)),
            _section("EXPLORATION", "enabled" if context.exploration_enabled else "disabled"),
            _section("DEPTH", str(context.reasoning_depth)),
        ]
    )


def build_exploration_prompt(query: str, context: CognitiveContext, base_reasoning: str) -> str:
    return "\n\n".join(
        [
            _section("MODE", MODE_EXPLORE),
            _section("QUERY", query),
            _section("MEMORY", _memory_line(context.memory_state)),
            _section("CURRENT", base_reasoning),
        ]
    )


def build_answer_prompt(query: str, consolidation: ConsolidationResult) -> str:
    insights = "\n".join(consolidation.insights) or "none"
    return "\n\n".join(
        [
            _section("MODE", MODE_ANSWER),
            _section("QUERY", query),
            _section("KNOWLEDGE", consolidation.consolidated_knowledge or "none"),
            _section("INSIGHTS", insights),
            _section("CONFIDENCE", f"{consolidation.consolidation_confidence:.4f}"),
        ]
    )


def parse_sections(prompt: str) -> dict[str, str]:
    """Split a prompt built above back into ``{SECTION: body}``."""
    sections: dict[str, str] = {}
    current = None
    lines: list[str] = []
    for line in prompt.splitlines():
        if line.startswith("## "):
            if current is not None:
                sections[current] = "\n".join(lines).strip()
            current = line[3:].strip().upper()
            lines = []
        elif current is not None:
            lines.append(line)
    if current is not None:
        sections[current] = "\n".join(lines).strip()
    return sections


def parse_memory_line(line: str) -> dict[str, float]:
    """Read ``key=value`` pairs from a MEMORY section. Unparseable pairs are skipped."""
    values: dict[str, float] = {}
    for token in line.split():
        key, sep, raw = token.partition("=")
        if not sep:
            continue
        try:
            values[key] = float(raw)
        except ValueError:
            continue
    return values

