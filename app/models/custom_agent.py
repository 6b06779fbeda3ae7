import secrets
from datetime import datetime
from typing import Literal

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import IndexModel

AgentType = Literal["image", "video", "music", "multimodal", "custom"]


def new_agent_id() -> str:
    return f"agent_{secrets.token_hex(8)}"


class CustomAgent(Document):
    agent_id: str = Field(default_factory=new_agent_id)
    owner: PydanticObjectId
    name: str = Field(max_length=64)
    description: str = Field(default="", max_length=256)
    type: AgentType = "custom"
    tools: list[str]
    system_prompt: str = Field(default="", max_length=4000)
    skill_md: str = ""
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "custom_agents"
        indexes = [
            IndexModel([("agent_id", 1)], unique=True),
            IndexModel([("owner", 1), ("created_at", -1)]),
        ]
