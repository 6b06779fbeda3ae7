from datetime import datetime
from typing import Any

from app.core.exceptions import BadRequestError, ForbiddenError, NotFoundError
from app.core.logging import get_logger
from app.models.custom_agent import AgentType, CustomAgent
from app.models.user import User
from app.services.tool_registry import get_registry

log = get_logger(__name__)


async def create_agent(
    user: User,
    name: str,
    tools: list[str],
    *,
    description: str = "",
    type: AgentType = "custom",
    system_prompt: str = "",
    skill_md: str = "",
) -> CustomAgent:
    if not tools:
        raise BadRequestError("An agent needs at least one tool")
    ok, unknown = get_registry().validate_tool_ids(tools)
    if not ok:
        raise BadRequestError("Unknown tools", details={"unknown_tools": unknown})
    agent = CustomAgent(
        owner=user.id,
        name=name.strip(),
        description=description,
        type=type,
        tools=list(dict.fromkeys(tools)),
        system_prompt=system_prompt,
        skill_md=skill_md,
    )
    await agent.insert()
    log.info("agent_created", agent_id=agent.agent_id, tools=len(agent.tools))
    return agent


async def list_agents(user: User) -> list[CustomAgent]:
    return (
        await CustomAgent.find(CustomAgent.owner == user.id, CustomAgent.is_active == True)  # noqa: E712
        .sort(-CustomAgent.created_at)
        .to_list()
    )


async def get_agent(agent_id: str) -> CustomAgent:
    agent = await CustomAgent.find_one(CustomAgent.agent_id == agent_id)
    if not agent or not agent.is_active:
        raise NotFoundError("Agent not found")
    return agent


async def delete_agent(user: User, agent_id: str) -> None:
    agent = await get_agent(agent_id)
    if agent.owner != user.id:
        raise ForbiddenError("Only the owner can delete this agent")
    agent.is_active = False
    agent.updated_at = datetime.utcnow()
    await agent.save()
    log.info("agent_deleted", agent_id=agent_id)


async def agent_tools(agent_id: str) -> list[dict[str, Any]]:
    agent = await get_agent(agent_id)
    return [t.public() for t in get_registry().tools_for_agent(agent.tools)]


def agent_out(agent: CustomAgent) -> dict[str, Any]:
    return {
        "agent_id": agent.agent_id,
        "owner": str(agent.owner),
        "name": agent.name,
        "description": agent.description,
        "type": agent.type,
        "tools": agent.tools,
        "system_prompt": agent.system_prompt,
        "skill_md": agent.skill_md,
        "is_active": agent.is_active,
        "created_at": agent.created_at,
    }
