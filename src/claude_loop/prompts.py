from __future__ import annotations

from pathlib import Path

import yaml

from claude_loop.models import BuiltPrompt, Principles, PromptContext, ReviewerError

PLACEHOLDER_COMPLETION_SIGNAL = "COMPLETION_SIGNAL_PLACEHOLDER"
PLACEHOLDER_PRINCIPLES_YAML = "PRINCIPLES_YAML_PLACEHOLDER"
PLACEHOLDER_NOTES_FILE = "NOTES_FILE_PLACEHOLDER"

TEMPLATE_WORKFLOW_CONTEXT = """## CONTINUOUS WORKFLOW CONTEXT

This is part of a continuous development loop where work happens incrementally across multiple iterations. You might run once, then a human developer might make changes, then you run again, and so on. This could happen daily or on any schedule.

**Important**: You don't need to complete the entire goal in one iteration. Just make meaningful progress on one thing, then leave clear notes for the next iteration (human or AI). Think of it as a relay race where you're passing the baton.

**Project Completion Signal**: If you determine that not just your current task but the ENTIRE project goal is fully complete (nothing more to be done on the overall goal), only include the exact phrase "COMPLETION_SIGNAL_PLACEHOLDER" in your response. Only use this when absolutely certain that the whole project is finished, not just your individual task. We will stop working on this project when multiple developers independently determine that the project is complete.

## PRIMARY GOAL"""

TEMPLATE_DECISION_PRINCIPLES = """## DECISION PRINCIPLES

The following principles guide your autonomous decision-making for this project:

```yaml
PRINCIPLES_YAML_PLACEHOLDER
```

### Decision Protocol (3-Step Resolution)

When making decisions, apply this protocol:

1. **Compatibility Check**: Are conflicting principles about different dimensions?
   - Scope = breadth (what to build), Trust = depth (quality level) → Compatible
   - Both about breadth (Scope vs UX) → Real conflict

2. **Type Classification**: Constraint vs Objective
   - **Constraints** (must satisfy first): Scope, Cost, Security, Privacy, Time
   - **Objectives** (optimize within constraints): Trust, UX, Innovation, Growth, Quality
   - Rule: Satisfy constraints first → Optimize objectives within constraints

3. **Priority Resolution**: When same-type principles conflict
   - Legal/Regulatory > Security > User Intent > Data Integrity > Quality > Speed > UX

### Response Format for Significant Decisions

When making non-trivial decisions, briefly report:
- **Decision**: What you decided
- **Rationale**: Which principle(s) applied (e.g., "Scope=3 + Trust=7")

### When to Ask (Rare)

Only ask the user when ALL conditions are met:
- Weight difference < 2 between conflicting principles
- The 3-step resolution doesn't resolve it
- Options are mutually exclusive (can't satisfy both)

**Default behavior**: Decide autonomously and report your reasoning.
"""

TEMPLATE_NOTES_CONTEXT = """## CONTEXT FROM PREVIOUS ITERATION

The following is from `NOTES_FILE_PLACEHOLDER`, maintained by previous iterations to provide context:

"""

TEMPLATE_ITERATION_NOTES = """## ITERATION NOTES

"""

TEMPLATE_NOTES_UPDATE_EXISTING = (
    "Update the `NOTES_FILE_PLACEHOLDER` file with relevant context for the next iteration. "
    "Add new notes and remove outdated information to keep it current and useful."
)

TEMPLATE_NOTES_CREATE_NEW = (
    "Create a `NOTES_FILE_PLACEHOLDER` file with relevant context and instructions for the next iteration."
)

TEMPLATE_NOTES_GUIDELINES = """

This file helps coordinate work across iterations (both human and AI developers). It should:

- Contain relevant context and instructions for the next iteration
- Stay concise and actionable (like a notes file, not a detailed report)
- Help the next developer understand what to do next

The file should NOT include:
- Lists of completed work or full reports
- Information that can be discovered by running tests/coverage
- Unnecessary details"""

TEMPLATE_REVIEWER_CONTEXT = """## CODE REVIEW CONTEXT

You are performing a review pass on changes just made by another developer. This is NOT a new feature implementation - you are reviewing and validating existing changes using the instructions given below by the user. Feel free to use git commands to see what changes were made if it's helpful to you."""

TEMPLATE_COUNCIL_RESOLUTION = """A principle conflict was detected that requires Council resolution.

## Conflict Context
{conflict_context}

## Current Principles
```yaml
{principles_yaml}
```

## Instructions
Please analyze this conflict using the 3-step resolution protocol:
1. Compatibility Check: Are conflicting principles about different dimensions?
2. Type Classification: Is this Constraint vs Objective?
3. Priority Resolution: Apply the priority hierarchy if needed.

Provide a clear recommendation with rationale.

## Response Format
**Decision**: <your recommendation>
**Rationale**: <which principle(s) applied and why>"""


def _principles_yaml(principles: Principles) -> str:
    return yaml.safe_dump(principles.to_dict(), sort_keys=False)


def _load_notes(notes_file: str) -> tuple[str, bool]:
    """Return ``(content, exists)`` for the shared notes file.

    An empty path or a missing file is not an error. Other read failures
    propagate as ``OSError``.
    """
    if not notes_file:
        return ("", False)
    path = Path(notes_file)
    try:
        return (path.read_text(encoding="utf-8"), True)
    except FileNotFoundError:
        return ("", False)


def build_prompt(context: PromptContext) -> BuiltPrompt:
    """Assemble the primary iteration prompt.

    Sections, in order: decision principles (when loaded), workflow context
    with the completion signal substituted, the user prompt, notes carried
    over from the previous iteration, and notes instructions/guidelines when
    a notes file is configured.
    """
    parts: list[str] = []
    principles_injected = False
    if context.principles is not None:
        parts.append(
            TEMPLATE_DECISION_PRINCIPLES.replace(
                PLACEHOLDER_PRINCIPLES_YAML, _principles_yaml(context.principles)
            )
        )
        parts.append("\n\n")
        principles_injected = True

    parts.append(
        TEMPLATE_WORKFLOW_CONTEXT.replace(PLACEHOLDER_COMPLETION_SIGNAL, context.completion_signal)
    )
    parts.append("\n\n")
    parts.append(context.user_prompt)
    parts.append("\n\n")

    notes_content, notes_exists = _load_notes(context.notes_file)
    notes_included = False
    if notes_exists and notes_content:
        parts.append(TEMPLATE_NOTES_CONTEXT.replace(PLACEHOLDER_NOTES_FILE, context.notes_file))
        parts.append(notes_content)
        parts.append("\n\n")
        notes_included = True

    if context.notes_file:
        parts.append(TEMPLATE_ITERATION_NOTES)
        template = TEMPLATE_NOTES_UPDATE_EXISTING if notes_exists else TEMPLATE_NOTES_CREATE_NEW
        parts.append(template.replace(PLACEHOLDER_NOTES_FILE, context.notes_file))
        parts.append(TEMPLATE_NOTES_GUIDELINES)

    return BuiltPrompt(
        prompt="".join(parts),
        notes_included=notes_included,
        principles_injected=principles_injected,
    )


def build_reviewer_prompt(review_prompt: str) -> str:
    if not review_prompt:
        raise ReviewerError("prompt", "no review prompt provided")
    return f"{TEMPLATE_REVIEWER_CONTEXT}\n\n## USER REVIEW INSTRUCTIONS\n\n{review_prompt}"


def build_council_prompt(conflict_context: str, principles: Principles) -> str:
    return TEMPLATE_COUNCIL_RESOLUTION.format(
        conflict_context=conflict_context,
        principles_yaml=_principles_yaml(principles),
    )
