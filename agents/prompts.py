"""Versioned prompt templates for every reasoning operation.

This module contains the prompt templates used by the Manager and Workers:
- goal_analysis: Turn a free-text goal into a structured GoalAnalysis
- team_formation: Propose 3-5 worker specifications for a goal
- task_decomposition: Break a goal into concrete tasks with required skills
- output_review: Decide whether a task output is approved
- task_execution: Let a worker carry out one assigned task

Templates are immutable, validated when they are defined, and rendered by
substituting ``{{variable}}`` placeholders. The library is loaded once at
import time and never mutated at runtime.
"""

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from errors import ConfigError

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def compose_prompt_sections(*sections: str) -> str:
    """Compose prompt sections into a single deterministic prompt."""
    cleaned = [section.strip() for section in sections if section and section.strip()]
    return "\n\n".join(cleaned)


def build_json_contract(schema_hint: str) -> str:
    """Build the shared output contract appended to every system prompt."""
    return f"""## Output Contract
Respond with a single JSON value and nothing else. Do not wrap it in prose.
If you use a fenced code block, it must contain only the JSON.

Expected shape:
{schema_hint}"""


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        if not value:
            return "(none)"
        return "\n".join(f"- {_format_value(item)}" for item in value)
    return json.dumps(value, ensure_ascii=False, default=str)


@dataclass(frozen=True)
class RenderedPrompt:
    """A fully substituted prompt, ready to send to the reasoning capability."""

    name: str
    version: str
    system: str
    user: str

    def to_messages(self) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self.system},
            {"role": "user", "content": self.user},
        ]


@dataclass(frozen=True)
class PromptTemplate:
    """Named, versioned system + user prompt pair.

    The user template may reference variables with ``{{name}}``. Any other
    use of double braces is rejected when the template is constructed, so
    a malformed template fails at import rather than mid-run.

    Attributes:
        name: Stable identifier used to look the template up.
        version: Semantic version, bumped whenever the wording changes.
        system: System prompt sent verbatim.
        user_template: User prompt with ``{{variable}}`` placeholders.
        variables: Placeholder names found in ``user_template`` (derived).
    """

    name: str
    version: str
    system: str
    user_template: str
    variables: frozenset[str] = field(init=False)

    def __post_init__(self) -> None:
        if not self.name or not self.version:
            raise ConfigError("prompt template requires a name and a version")
        stripped = PLACEHOLDER_PATTERN.sub("", self.user_template)
        if "{{" in stripped or "}}" in stripped:
            raise ConfigError(f"malformed placeholder in prompt template '{self.name}'")
        variables = frozenset(PLACEHOLDER_PATTERN.findall(self.user_template))
        object.__setattr__(self, "variables", variables)

    def render(self, **variables: Any) -> RenderedPrompt:
        """Substitute every placeholder and return the rendered prompt.

        Lists render as bulleted lines; other non-string values as JSON.
        Extra variables are ignored.

        Raises:
            ConfigError: If a placeholder has no value.
        """
        missing = sorted(self.variables - variables.keys())
        if missing:
            raise ConfigError(
                f"prompt template '{self.name}' is missing variables: {', '.join(missing)}"
            )

        def substitute(match: re.Match[str]) -> str:
            return _format_value(variables[match.group(1)])

        return RenderedPrompt(
            name=self.name,
            version=self.version,
            system=self.system,
            user=PLACEHOLDER_PATTERN.sub(substitute, self.user_template),
        )


GOAL_ANALYSIS = PromptTemplate(
    name="goal_analysis",
    version="1.0.0",
    system=compose_prompt_sections(
        "You are a highly skilled project manager analyzing project goals. "
        "Analyze the following goal and provide structured output in JSON format.",
        build_json_contract("""\
{
  "core_objective": "one sentence",
  "subtasks": ["ordered subtask", "..."],
  "required_specializations": ["Researcher | Coder | Reviewer | Tester | Writer"],
  "estimated_timeline_hours": 8.0,
  "potential_blockers": ["..."],
  "success_criteria": ["..."]
}"""),
    ),
    user_template="""\
Goal: {{goal}}

Provide:
1. Core objective (one sentence)
2. Key subtasks (ordered list)
3. Required specializations (types of workers needed)
4. Estimated timeline (hours)
5. Potential blockers
6. Success criteria""",
)

TEAM_FORMATION = PromptTemplate(
    name="team_formation",
    version="1.0.0",
    system=compose_prompt_sections(
        "You are forming a team of specialized AI agents. "
        "Create 3-5 worker specifications in JSON format.",
        build_json_contract("""\
{
  "workers": [
    {
      "specialization": "Researcher | Coder | Reviewer | Tester | Writer",
      "skills": ["..."],
      "responsibilities": ["..."],
      "required_tools": ["..."]
    }
  ]
}"""),
    ),
    user_template="""\
Goal: {{goal}}
Subtasks:
{{subtasks}}

Required specializations:
{{specializations}}

Create 3-5 specialized workers. For each:
- Role name and specialization
- Key skills required
- Primary responsibilities
- Tools they'll need""",
)

TASK_DECOMPOSITION = PromptTemplate(
    name="task_decomposition",
    version="1.0.0",
    system=compose_prompt_sections(
        "You are breaking down a goal into concrete, actionable tasks.",
        build_json_contract("""\
{
  "tasks": [
    {
      "title": "...",
      "description": "...",
      "acceptance_criteria": ["3-5 checkable items"],
      "required_skills": ["..."],
      "estimated_complexity": "low | medium | high"
    }
  ]
}"""),
    ),
    user_template="""\
Goal: {{goal}}

Known subtasks:
{{subtasks}}

For each task provide:
- Title
- Detailed description
- Acceptance criteria (3-5 checkable items)
- Required skills
- Estimated tokens/complexity""",
)

OUTPUT_REVIEW = PromptTemplate(
    name="output_review",
    version="1.0.0",
    system=compose_prompt_sections(
        "You are the manager of a team of AI workers reviewing one task output. "
        "Approve it only if every acceptance criterion is met. Request a revision "
        "when the output is close but incomplete, with concrete feedback. Reject it "
        "when it is unusable or off-task.",
        build_json_contract("""\
{"decision": "approved"}
{"decision": "revision_requested", "feedback": "what to change"}
{"decision": "rejected", "reason": "why it cannot be accepted"}"""),
    ),
    user_template="""\
Task: {{title}}
Description: {{description}}

Acceptance criteria:
{{acceptance_criteria}}

Attempt: {{attempt}}

Worker output:
{{output}}""",
)

TASK_EXECUTION = PromptTemplate(
    name="task_execution",
    version="1.0.0",
    system=compose_prompt_sections(
        "You are a specialized AI worker on a team. Complete the assigned task "
        "and report the result.",
        build_json_contract("""\
{
  "result": "any JSON value describing the outcome",
  "artifacts": ["names of produced artifacts"],
  "logs": ["short progress notes"]
}"""),
    ),
    user_template="""\
Role: {{specialization}}
Skills:
{{skills}}

Task: {{title}}
Description: {{description}}

Acceptance criteria:
{{acceptance_criteria}}

Reviewer feedback from earlier attempts:
{{feedback}}""",
)

PROMPT_LIBRARY: Mapping[str, PromptTemplate] = MappingProxyType(
    {
        template.name: template
        for template in (
            GOAL_ANALYSIS,
            TEAM_FORMATION,
            TASK_DECOMPOSITION,
            OUTPUT_REVIEW,
            TASK_EXECUTION,
        )
    }
)


def get_prompt(name: str) -> PromptTemplate:
    """Look up a template by name.

    Raises:
        ConfigError: If no template has that name.
    """
    try:
        return PROMPT_LIBRARY[name]
    except KeyError:
        raise ConfigError(f"unknown prompt template '{name}'") from None
