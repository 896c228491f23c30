"""
State Machine Module for Conversation Flows
"""
from app.state_machine.states import ConversationEvent, ConversationState
from app.state_machine.manager import StateManager, TransitionResult

__all__ = ["ConversationEvent", "ConversationState", "StateManager", "TransitionResult"]
