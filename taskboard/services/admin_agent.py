"""Conversational admin agent over the task tools."""

import os
from typing import Optional

from langchain.agents import create_agent
from langchain_anthropic import ChatAnthropic
from langchain_openai import ChatOpenAI

from taskboard.services.agent_tools import ActingUser, build_admin_tools
from taskboard.services.engine import TaskEngine
from taskboard.utils.errors import ConfigurationError
from taskboard.utils.logging import get_structured_logger, mask_user_id
from taskboard.utils.settings import EngineSettings

logger = get_structured_logger(__name__)

ADMIN_SYSTEM_PROMPT = """You are the task management assistant for an administrator.

You can plan and create tasks, find the best employees for them, assign and
reassign work, update progress and status, list or inspect tasks, and look up
employees with their workload and performance.

Rules:
- Deadlines must be in the future. Ask for one if the user wants a due date but gave none.
- Before assigning, suggest assignees unless the user already named an employee.
- Never delete a task without asking the user to confirm first. Only call
  delete_task with confirmed=true after an explicit yes.
- When a tool reports several matching employees, ask the user which one they mean.
- Report warnings returned by tools to the user.
"""


def get_llm_model(settings: Optional[EngineSettings] = None):
    """Get configured LLM model."""
    settings = settings or EngineSettings.from_env()
    provider = settings.llm_provider
    model_name = settings.llm_model

    logger.debug(
        "Getting LLM model",
        llm_provider=provider,
        llm_model=model_name
    )

    if provider == "anthropic":
        api_key = os.environ.get("ANTHROPIC_API_KEY")
        if not api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY not set")
        return ChatAnthropic(model=model_name, api_key=api_key)
    elif provider == "openai":
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY not set")
        return ChatOpenAI(model=model_name, api_key=api_key)
    else:
        raise ConfigurationError(f"Unsupported LLM provider: {provider}")


def create_admin_agent(engine: TaskEngine, actor: ActingUser, model=None):
    """Build the admin chat agent bound to ``engine`` and acting as ``actor``."""
    model = model or get_llm_model(engine.settings)
    tools = build_admin_tools(engine, actor)

    logger.info(
        "Admin agent created",
        actor=mask_user_id(actor.id),
        tools=[t.name for t in tools],
    )
    return create_agent(model, tools=tools, system_prompt=ADMIN_SYSTEM_PROMPT)
