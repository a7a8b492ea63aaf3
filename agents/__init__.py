"""Agents, prompts, reasoning adapters and the team graph.

This module exports the key components needed to run a team:
- Versioned prompt templates for every manager and worker operation
- The reasoning port with its LiteLLM-backed and mock adapters
- Manager and Worker agents
- The Scheduler that dispatches, executes and reviews tasks
- The team graph driving a team from goal to terminal status
"""

from agents.manager import ManagerAgent, parse_review_decision
from agents.prompts import (
    GOAL_ANALYSIS,
    OUTPUT_REVIEW,
    PROMPT_LIBRARY,
    TASK_DECOMPOSITION,
    TASK_EXECUTION,
    TEAM_FORMATION,
    PromptTemplate,
    RenderedPrompt,
    get_prompt,
)
from agents.reasoning import (
    DEFAULT_MOCK_RESPONSES,
    LLMReasoning,
    MockReasoning,
    ReasoningPort,
    create_reasoning,
)
from agents.scheduler import Scheduler, SchedulerOutcome, SchedulerPolicy
from agents.state import project_agent_state
from agents.team_graph import (
    TeamGraph,
    TeamState,
    create_team_graph,
    create_team_initial_state,
)
from agents.utils import (
    LLMClient,
    LLMResponse,
    MockLLMClient,
    extract_json_from_response,
)
from agents.worker import WorkerAgent

__all__ = [
    # Prompts
    "GOAL_ANALYSIS",
    "OUTPUT_REVIEW",
    "PROMPT_LIBRARY",
    "TASK_DECOMPOSITION",
    "TASK_EXECUTION",
    "TEAM_FORMATION",
    "PromptTemplate",
    "RenderedPrompt",
    "get_prompt",
    # Reasoning
    "DEFAULT_MOCK_RESPONSES",
    "LLMReasoning",
    "MockReasoning",
    "ReasoningPort",
    "create_reasoning",
    # Utils
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "extract_json_from_response",
    # Agents
    "ManagerAgent",
    "WorkerAgent",
    "parse_review_decision",
    # Scheduling
    "Scheduler",
    "SchedulerOutcome",
    "SchedulerPolicy",
    "project_agent_state",
    # Team Graph
    "TeamGraph",
    "TeamState",
    "create_team_graph",
    "create_team_initial_state",
]
