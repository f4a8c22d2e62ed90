"""Tests for the admin agent factory."""

import pytest
from unittest.mock import MagicMock, patch

from taskboard.services.admin_agent import ADMIN_SYSTEM_PROMPT, create_admin_agent, get_llm_model
from taskboard.services.agent_tools import ActingUser
from taskboard.utils.errors import AuthRequiredError, ConfigurationError
from taskboard.utils.settings import EngineSettings


@pytest.mark.unit
def test_get_llm_model_anthropic(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
    settings = EngineSettings(llm_provider="anthropic", llm_model="claude-sonnet-4-20250514")

    with patch("taskboard.services.admin_agent.ChatAnthropic") as mock_chat:
        model = get_llm_model(settings)

    mock_chat.assert_called_once_with(model="claude-sonnet-4-20250514", api_key="sk-ant-test")
    assert model is mock_chat.return_value


@pytest.mark.unit
def test_get_llm_model_openai(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    settings = EngineSettings(llm_provider="openai", llm_model="gpt-4o-mini")

    with patch("taskboard.services.admin_agent.ChatOpenAI") as mock_chat:
        get_llm_model(settings)

    mock_chat.assert_called_once_with(model="gpt-4o-mini", api_key="sk-test")


@pytest.mark.unit
def test_get_llm_model_missing_key(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

    with pytest.raises(ConfigurationError, match="ANTHROPIC_API_KEY"):
        get_llm_model(EngineSettings(llm_provider="anthropic"))


@pytest.mark.unit
def test_get_llm_model_unknown_provider():
    with pytest.raises(ConfigurationError, match="Unsupported LLM provider"):
        get_llm_model(EngineSettings(llm_provider="mistral"))


@pytest.mark.unit
def test_create_admin_agent_binds_tools(engine, admin_id):
    model = MagicMock()

    with patch("taskboard.services.admin_agent.create_agent") as mock_create:
        agent = create_admin_agent(engine, ActingUser(id=admin_id), model=model)

    assert agent is mock_create.return_value
    args, kwargs = mock_create.call_args
    assert args[0] is model
    assert kwargs["system_prompt"] == ADMIN_SYSTEM_PROMPT
    assert {t.name for t in kwargs["tools"]} >= {"create_task", "assign_task", "delete_task"}


@pytest.mark.unit
def test_create_admin_agent_requires_actor(engine):
    with pytest.raises(AuthRequiredError):
        create_admin_agent(engine, None, model=MagicMock())


@pytest.mark.unit
@pytest.mark.asyncio
async def test_agent_invocation_is_delegated(engine, admin_id, mock_langchain_agent):
    mock_langchain_agent.ainvoke.return_value = {"messages": [MagicMock(content="Task created")]}

    with patch("taskboard.services.admin_agent.create_agent", return_value=mock_langchain_agent):
        agent = create_admin_agent(engine, ActingUser(id=admin_id), model=MagicMock())
        result = await agent.ainvoke({"messages": [{"role": "user", "content": "Create a task"}]})

    assert result["messages"][-1].content == "Task created"
