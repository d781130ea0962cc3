"""
Agent metadata lookups used to shape answers and fallback behaviour.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.exceptions import BusinessLogicException
from ..models.agent import Agent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentMetadata:
    agent_id: int
    name: str = "Assistant"
    role: str = "assistant"
    tone: str = "neutral"
    description: str = ""
    do_not_answer_from_general_knowledge: bool = False

    @classmethod
    def from_model(cls, agent: Agent) -> "AgentMetadata":
        return cls(
            agent_id=agent.id,
            name=agent.name or "Assistant",
            role=agent.role or "assistant",
            tone=agent.tone or "neutral",
            description=agent.description or "",
            do_not_answer_from_general_knowledge=bool(agent.do_not_answer_from_general_knowledge),
        )

    def system_prompt(self) -> str:
        prompt = f"You are {self.name}, a {self.role}. Respond in a {self.tone} tone."
        if self.description:
            prompt += f" {self.description}"
        return prompt


class AgentMetadataSource:
    """Reads agent configuration from the agents table"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get(self, agent_id: int) -> Optional[AgentMetadata]:
        """Active agent metadata, or None when the agent is unknown or disabled"""
        try:
            async with self.session_factory() as session:
                agent = await session.scalar(select(Agent).where(Agent.id == agent_id))
        except Exception as e:
            logger.error(f"Error fetching agent {agent_id}: {e}", extra={"agent_id": agent_id})
            raise BusinessLogicException(f"Failed to fetch agent: {str(e)}", "get_agent")

        if agent is None or not agent.is_active:
            return None
        return AgentMetadata.from_model(agent)

    async def create(
        self,
        name: str,
        role: Optional[str] = None,
        tone: Optional[str] = None,
        description: Optional[str] = None,
        do_not_answer_from_general_knowledge: bool = False,
    ) -> AgentMetadata:
        async with self.session_factory() as session:
            agent = Agent(
                name=name,
                role=role,
                tone=tone,
                description=description,
                do_not_answer_from_general_knowledge=do_not_answer_from_general_knowledge,
                is_active=True,
            )
            session.add(agent)
            await session.commit()
            await session.refresh(agent)
            logger.info(f"Created agent {agent.id}", extra={"agent_id": agent.id})
            return AgentMetadata.from_model(agent)
