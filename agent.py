import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Optional

from openai import OpenAI, OpenAIError

logger = logging.getLogger(__name__)

FALLBACK_NOT_CONFIGURED = 'I can only follow direct commands right now. Try "help" or "my projects".'
FALLBACK_ERROR = "Something went wrong reading your message. Please try again."
FALLBACK_UNCLEAR = 'I did not get that. Write "help" to see what I can do.'

SYSTEM_PROMPT = """
You are Project Pulse, a PMO assistant for project managers.

You help them:
- look up information about their projects
- find a project by its PMO ID (e.g. PMO-911)
- understand how to use the bot

Rules:
- Be short and direct
- If the message contains a PMO-XXXX pattern, call search_project with it
- If the user greets you, call direct_reply with a short greeting
- If they ask about their own projects, call my_projects
- If they ask how to use the bot, call show_help
- If you do not understand, call direct_reply asking for clarification
- ALWAYS call one of the tools, never answer in plain text
""".strip()

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "search_project",
            "description": "Look up a project by its PMO ID (e.g. PMO-911)",
            "parameters": {
                "type": "object",
                "properties": {"business_id": {"type": "string", "description": "PMO ID, e.g. PMO-911"}},
                "required": ["business_id"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "my_projects",
            "description": "List the projects where the user is the owner",
            "parameters": {"type": "object", "properties": {}, "required": []},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "show_help",
            "description": "Show how to use the bot",
            "parameters": {"type": "object", "properties": {}, "required": []},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "direct_reply",
            "description": "Reply without running any action: greetings, general questions, clarifications.",
            "parameters": {
                "type": "object",
                "properties": {"message": {"type": "string", "description": "Text to send to the user"}},
                "required": ["message"],
            },
        },
    },
]

_WRAPPED_REPLY = re.compile(r"<direct_reply>\s*({[\s\S]*?})\s*</direct_reply>", re.IGNORECASE)


@dataclass
class AgentResult:
    tool: Optional[str] = None
    params: Dict = field(default_factory=dict)
    response: Optional[str] = None


def normalize_agent_response(text: str) -> str:
    """Small models sometimes print the tool call instead of making it."""
    trimmed = (text or "").strip()
    m = _WRAPPED_REPLY.search(trimmed)
    if not m:
        return trimmed
    try:
        payload = json.loads(m.group(1))
    except ValueError:
        return re.sub(r"<[^>]+>", "", trimmed).strip()
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return trimmed


class Agent:
    def __init__(self, client: Optional[OpenAI], model: str = "gpt-4.1-mini"):
        self.client = client
        self.model = model

    def process(self, user_text: str) -> AgentResult:
        if self.client is None:
            return AgentResult(response=FALLBACK_NOT_CONFIGURED)

        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": user_text},
                ],
                tools=TOOLS,
                tool_choice="auto",
                max_tokens=256,
                temperature=0,
            )
        except OpenAIError as e:
            logger.error("agent call failed: %r", e)
            return AgentResult(response=FALLBACK_ERROR)

        if not resp.choices:
            return AgentResult(response=FALLBACK_UNCLEAR)
        message = resp.choices[0].message

        if message.tool_calls:
            call = message.tool_calls[0]
            try:
                params = json.loads(call.function.arguments or "{}")
            except ValueError:
                params = {}
            return AgentResult(tool=call.function.name, params=params)

        if message.content:
            return AgentResult(response=normalize_agent_response(message.content))

        return AgentResult(response=FALLBACK_UNCLEAR)
