import uuid

import pytest

from backend.src.engine.content import ImagePart, TextPart
from backend.src.services.errors import PersistenceError
from backend.src.services.json_store import JsonConversationStore


@pytest.mark.asyncio
async def test_json_store_flow(tmp_path):
    store = JsonConversationStore(str(tmp_path))
    user_id = str(uuid.uuid4())

    convo = await store.create(user_id, "first question")
    await store.append_message(convo.id, "user", [TextPart(text="hi"), ImagePart(url="https://example.com/a.png")])
    await store.append_message(convo.id, "assistant", [TextPart(text="hello")])
    await store.touch(convo.id)

    assert (await store.find_owned(convo.id, user_id)).title == "first question"
    assert await store.find_owned(convo.id, "someone-else") is None

    listed = await store.list_conversations(user_id)
    assert [c.id for c in listed] == [convo.id]
    assert listed[0].message_count == 2

    messages = await store.list_messages(convo.id)
    assert messages[0].parts == [TextPart(text="hi"), ImagePart(url="https://example.com/a.png")]
    assert messages[1].parts == [TextPart(text="hello")]

    await store.delete(convo.id)
    assert await store.find_owned(convo.id, user_id) is None
    assert await store.list_conversations(user_id) == []


@pytest.mark.asyncio
async def test_json_store_ignores_non_uuid_ids(tmp_path):
    store = JsonConversationStore(str(tmp_path))
    assert await store.find_owned("../../etc/passwd", "u") is None
    assert await store.list_messages("nope") == []
    with pytest.raises(PersistenceError):
        await store.append_message("nope", "user", [TextPart(text="x")])
