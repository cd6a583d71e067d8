"""Canonical MQTT topic constants for Kairos.

All services MUST use these constants instead of hardcoding topic strings.
Topic namespace: kairos/
"""

# Chat / Conversation
CHAT_INPUT = "kairos/chat/input"
CHAT_OUTPUT = "kairos/chat/output"
CONVERSATION_STATE = "kairos/conversation/state"
