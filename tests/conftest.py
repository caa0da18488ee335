import copy

import pytest

from fixloop.models import BackendReply, ToolCallRequest, UsageEvent


class ScriptedBackend:
    """
    Replays a fixed list of replies. Each entry is a BackendReply, an
    exception to raise, or a callable taking the messages and returning one
    of those. Every request is recorded as a deep copy.
    """

    def __init__(self, replies):
        self.replies = list(replies)
        self.requests = []

    async def complete(self, model, messages, tools):
        self.requests.append(
            {"model": model, "messages": copy.deepcopy(messages), "tools": copy.deepcopy(tools)}
        )
        if not self.replies:
            raise AssertionError("ScriptedBackend ran out of replies")
        reply = self.replies.pop(0)
        if callable(reply) and not isinstance(reply, BackendReply):
            reply = reply(messages)
        if isinstance(reply, BaseException):
            raise reply
        return reply


def call(name, arguments="{}", call_id=None):
    return ToolCallRequest(id=call_id or f"call_{name}", name=name, arguments=arguments)


def tool_reply(*calls, usage=None):
    return BackendReply(content=None, tool_calls=list(calls), usage=usage)


def text_reply(content="done", usage=None):
    return BackendReply(content=content, usage=usage)


def usage(model="test-model", input_tokens=10, output_tokens=5):
    return UsageEvent(model=model, input_tokens=input_tokens, output_tokens=output_tokens)


@pytest.fixture
def package(tmp_path):
    root = tmp_path / "pkg"
    (root / "src").mkdir(parents=True)
    (root / "src" / "client.py").write_text(
        "class Client:\n    def get(self):\n        return old_name()\n", encoding="utf-8"
    )
    (root / "src" / "models.py").write_text("OLD = 1\nNEW = 2\n", encoding="utf-8")
    (root / "README.md").write_text("# pkg\nold_name is gone\n", encoding="utf-8")
    return root
