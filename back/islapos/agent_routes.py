"""
Support assistant chat.

Forwards the conversation to an OpenAI-compatible chat completion API with a
fixed system prompt. The HTTP client is a dependency so it can be replaced.
"""

import logging
from functools import lru_cache
from typing import Annotated, Any

import httpx
from fastapi import APIRouter, Depends

from .errors import Forbidden, InvalidInput, UpstreamError
from .models import AgentChatRequest
from .security import Requester, get_requester
from .settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agent")

NOT_CONFIGURED_REPLY = (
    "AI is not configured yet. Add OPENAI_API_KEY to your environment and restart the server. "
    "After that, this chat will work."
)

SYSTEM_PROMPT = (
    "You are IslaPOS Support AI. You help restaurant owners/managers troubleshoot printers, "
    "Edge Gateway pairing/sync, and KDS issues. "
    "Be concise, step-by-step, and ask only one clarifying question at a time when needed. "
    "When suggesting actions, prefer safe checks (health endpoints, test prints) before risky changes."
)

TEMPERATURE = 0.2
CHAT_ROLES = ("user", "assistant")


class ChatCompletionClient:
    def __init__(self, base_url: str, api_key: str, model: str, transport: httpx.BaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def complete(self, messages: list[dict[str, str]]) -> str:
        try:
            with httpx.Client(transport=self.transport, timeout=60.0) as client:
                response = client.post(
                    f"{self.base_url}/chat/completions",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={"model": self.model, "temperature": TEMPERATURE, "messages": messages},
                )
        except httpx.HTTPError as exc:
            logger.warning("Chat completion request failed: %s", exc)
            raise UpstreamError(f"AI provider unreachable: {exc}")

        try:
            data: Any = response.json()
        except ValueError:
            data = None

        if response.is_error:
            message = None
            if isinstance(data, dict) and isinstance(data.get("error"), dict):
                message = data["error"].get("message")
            raise UpstreamError(message or f"OpenAI error ({response.status_code})")

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return ""
        return content.strip() if isinstance(content, str) else ""


@lru_cache
def get_chat_client() -> ChatCompletionClient:
    return ChatCompletionClient(
        base_url=settings.openai_base_url,
        api_key=settings.openai_api_key.strip(),
        model=settings.openai_model.strip() or "gpt-4o-mini",
    )


def build_messages(body: AgentChatRequest, message: str) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]

    context = body.context
    gateway_url = (context.gateway_url or "").strip() if context else ""
    restaurant_id = (context.restaurant_id or "").strip() if context else ""
    if gateway_url or restaurant_id:
        messages.append({
            "role": "system",
            "content": f"Context: gatewayUrl={gateway_url or '(unknown)'} restaurantId={restaurant_id or '(unknown)'}",
        })

    for item in body.history or []:
        content = (item.content or "").strip()
        if item.role in CHAT_ROLES and content:
            messages.append({"role": item.role, "content": content})

    messages.append({"role": "user", "content": message})
    return messages


@router.post("/chat")
def agent_chat(
    requester: Annotated[Requester, Depends(get_requester)],
    client: Annotated[ChatCompletionClient, Depends(get_chat_client)],
    body: AgentChatRequest | None = None,
):
    if requester.role.is_restricted:
        raise Forbidden()

    body = body or AgentChatRequest()
    message = (body.message or "").strip()
    if not message:
        raise InvalidInput("Missing message")

    if not client.configured:
        return {"ok": True, "reply": NOT_CONFIGURED_REPLY}

    reply = client.complete(build_messages(body, message))
    return {"ok": True, "reply": reply}
