# conversation.py
# Append-only message history for one agent run.
#
# The history is never edited in place. compacted() derives the view that is
# sent to the model: repeated system messages collapse to one and only the
# latest nudge survives. Tool and assistant messages are always kept.

import json

from workflow_agent.models import ConversationMessage, ExecutionRecord, ToolCall


class Conversation:
    def __init__(self) -> None:
        self._messages: list[ConversationMessage] = []

    @property
    def messages(self) -> list[ConversationMessage]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    # ------------------------------------------------------------------
    # Appending
    # ------------------------------------------------------------------

    def add_system(self, content: str) -> None:
        self._messages.append(ConversationMessage(role="system", content=content))

    def add_user(self, content: str) -> None:
        self._messages.append(ConversationMessage(role="user", content=content))

    def add_assistant(self, content: str, tool_calls: list[ToolCall] | None = None) -> None:
        self._messages.append(ConversationMessage(role="assistant", content=content, tool_calls=tool_calls or []))

    def add_tool_result(self, record: ExecutionRecord) -> None:
        self._messages.append(
            ConversationMessage(
                role="tool",
                content=record.payload(),
                tool_call_id=record.call_id,
                name=record.tool,
            )
        )

    def add_nudge(self, content: str) -> None:
        self._messages.append(ConversationMessage(role="user", content=content, nudge=True))

    # ------------------------------------------------------------------
    # Context view
    # ------------------------------------------------------------------

    def compacted(self) -> list[ConversationMessage]:
        seen_system: set[str] = set()
        last_nudge = max((i for i, m in enumerate(self._messages) if m.nudge), default=None)
        kept: list[ConversationMessage] = []
        for i, message in enumerate(self._messages):
            if message.role == "system":
                if message.content in seen_system:
                    continue
                seen_system.add(message.content)
            elif message.nudge and i != last_nudge:
                continue
            kept.append(message)
        return kept

    def to_provider(self, family: str) -> list[dict]:
        """
        Render the compacted history for a chat-completions request.

        The native family uses assistant tool_calls and tool messages. The
        text family has no notion of either, so calls stay as the prose the
        model wrote and results come back as user messages.
        """
        rendered: list[dict] = []
        for message in self.compacted():
            if message.role == "assistant":
                entry: dict = {"role": "assistant", "content": message.content or None}
                if family == "native" and message.tool_calls:
                    entry["tool_calls"] = [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.params)},
                        }
                        for call in message.tool_calls
                    ]
                elif entry["content"] is None:
                    entry["content"] = ""
                rendered.append(entry)
            elif message.role == "tool":
                if family == "native":
                    rendered.append({"role": "tool", "tool_call_id": message.tool_call_id, "content": message.content})
                else:
                    rendered.append(
                        {"role": "user", "content": f"Tool result for {message.name}:\n{message.content}"}
                    )
            else:
                rendered.append({"role": message.role, "content": message.content})
        return rendered
