"""
State Manager - Handles conversation state transitions and context management
"""
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.database import utcnow
from app.db.models.conversation import Conversation
from app.state_machine.states import ConversationEvent, ConversationState, find_transition

logger = get_logger(__name__)


@dataclass
class TransitionResult:
    success: bool
    from_state: str
    to_state: str
    action: Optional[str] = None


class StateManager:
    """Manages conversation state transitions"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_or_create_conversation(self, customer_phone: str) -> Conversation:
        """Get existing conversation or create new one"""
        result = await self.db.execute(
            select(Conversation).where(Conversation.customer_phone == customer_phone)
        )
        conversation = result.scalar_one_or_none()
        if conversation:
            return conversation

        try:
            async with self.db.begin_nested():
                conversation = Conversation(
                    customer_phone=customer_phone,
                    state=ConversationState.IDLE.value,
                    context={},
                )
                self.db.add(conversation)
        except IntegrityError:
            # נוצרה במקביל ע"י הודעה אחרת של אותו לקוח
            result = await self.db.execute(
                select(Conversation).where(Conversation.customer_phone == customer_phone)
            )
            return result.scalar_one()
        await self.db.commit()
        return conversation

    async def apply_event(
        self,
        conversation: Conversation,
        event: ConversationEvent,
        payload: Optional[dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        הפעלת אירוע על השיחה.

        מעבר לא חוקי לא משנה את המצב ומחזיר success=False.
        """
        current = conversation.state
        transition = find_transition(current, event)
        if transition is None:
            logger.warning(
                "Invalid state transition attempted",
                extra_data={
                    "phone": PhoneNumberValidator.mask(conversation.customer_phone),
                    "current_state": current,
                    "event": event.value,
                },
            )
            return TransitionResult(False, current, current)

        to_state, action = transition
        # dict חדש - כדי ש-SQLAlchemy יזהה את השינוי בעמודת JSON
        context = {} if action == "clear_context" else dict(conversation.context or {})
        if payload:
            context.update(payload)
        context["last_action"] = action

        conversation.state = to_state.value
        conversation.context = context
        conversation.last_message_at = utcnow()
        await self.db.commit()
        return TransitionResult(True, current, to_state.value, action)

    async def force_state(
        self,
        customer_phone: str,
        new_state: ConversationState,
        context_update: Optional[dict[str, Any]] = None,
    ) -> None:
        """Force state change without validation (checkout failure / admin reset)"""
        conversation = await self.get_or_create_conversation(customer_phone)
        conversation.state = new_state.value
        if context_update:
            context = dict(conversation.context or {})
            context.update(context_update)
            conversation.context = context
        await self.db.commit()
