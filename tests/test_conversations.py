from records import ChatRepository


def test_unread_counts_only_partner_messages(store):
    chat = ChatRepository(store)
    chat.send("A", "B", "first from A")
    chat.send("B", "A", "reply from B")

    convs = chat.conversations_for("A")
    assert len(convs) == 1
    assert convs[0]["partnerId"] == "B"
    assert convs[0]["unreadCount"] == 1
    assert convs[0]["lastMessage"] == "reply from B"

    other_side = chat.conversations_for("B")
    assert other_side[0]["partnerId"] == "A"
    assert other_side[0]["unreadCount"] == 1


def test_conversations_ordered_by_latest_message(store):
    chat = ChatRepository(store)
    chat.send("A", "B", "to B")
    chat.send("C", "A", "from C")
    chat.send("A", "D", "to D")

    convs = chat.conversations_for("A")
    assert [c["partnerId"] for c in convs] == ["D", "C", "B"]
    assert [c["unreadCount"] for c in convs] == [0, 1, 0]
    times = [c["lastMessageTime"] for c in convs]
    assert times == sorted(times, reverse=True)


def test_mark_read_clears_unread(store):
    chat = ChatRepository(store)
    chat.send("B", "A", "one")
    chat.send("B", "A", "two")
    assert chat.conversations_for("A")[0]["unreadCount"] == 2

    chat.mark_read("B", "A")
    summary = chat.conversations_for("A")[0]
    assert summary["unreadCount"] == 0
    assert summary["lastMessage"] == "two"


def test_no_conversations(store):
    chat = ChatRepository(store)
    chat.send("B", "C", "not about A")
    assert chat.conversations_for("A") == []
