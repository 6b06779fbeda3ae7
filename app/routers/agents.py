from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.deps import get_current_user
from app.models.custom_agent import AgentType
from app.models.user import User
from app.services import agents as agents_service

router = APIRouter()


class AgentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    tools: list[str]
    description: str = Field("", max_length=256)
    type: AgentType = "custom"
    system_prompt: str = Field("", max_length=4000)
    skill_md: str = Field("", max_length=50000)


@router.post("")
async def agent_create(body: AgentCreate, user: User = Depends(get_current_user)):
    agent = await agents_service.create_agent(
        user,
        body.name,
        body.tools,
        description=body.description,
        type=body.type,
        system_prompt=body.system_prompt,
        skill_md=body.skill_md,
    )
    return agents_service.agent_out(agent)


@router.get("")
async def agents_list(user: User = Depends(get_current_user)):
    agents = await agents_service.list_agents(user)
    return {"agents": [agents_service.agent_out(a) for a in agents]}


@router.get("/{agent_id}")
async def agent_get(agent_id: str):
    return agents_service.agent_out(await agents_service.get_agent(agent_id))


@router.get("/{agent_id}/tools")
async def agent_tools(agent_id: str):
    """Registry definitions of the tools this agent may call."""
    return {"agent_id": agent_id, "tools": await agents_service.agent_tools(agent_id)}


@router.delete("/{agent_id}")
async def agent_delete(agent_id: str, user: User = Depends(get_current_user)):
    await agents_service.delete_agent(user, agent_id)
    return {"ok": True}
