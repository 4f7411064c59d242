from unittest.mock import patch

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from chats import pair_key
from errors import AuthorizationFailure, BusinessRuleViolation, NotFound, ValidationFailure


@pytest.fixture
def direct(chats, alice, bob):
    chat, _ = chats.create_direct_chat(alice, bob["id"])
    return chat


@pytest.fixture
def trip_chat(chats, trips, trip, alice, bob):
    trips.join_trip(str(trip["_id"]), bob)
    return chats.create_group_chat(alice, "Tatra crew", [bob["id"]], trip_id=str(trip["_id"]))


def test_pair_key_is_order_independent():
    assert pair_key("a", "b") == pair_key("b", "a") == "a:b"


def test_direct_chat_is_unique_per_pair(db, chats, alice, bob):
    first, created = chats.create_direct_chat(alice, bob["id"])
    second, created_again = chats.create_direct_chat(bob, alice["id"])

    assert created is True
    assert created_again is False
    assert second["_id"] == first["_id"]
    assert db["chat"].count_documents({"chat_type": "direct"}) == 1
    names = {p["user"]["name"] for p in second["participants"]}
    assert names == {"Alice", "Bob"}


def test_pair_key_index_rejects_a_second_direct_chat(db, direct, alice, bob):
    with pytest.raises(DuplicateKeyError):
        db["chat"].insert_one({"chat_type": "direct", "pair_key": pair_key(bob["id"], alice["id"])})


def test_direct_chat_validation(chats, alice):
    with pytest.raises(ValidationFailure):
        chats.create_direct_chat(alice, None)
    with pytest.raises(ValidationFailure):
        chats.create_direct_chat(alice, alice["id"])
    with pytest.raises(NotFound):
        chats.create_direct_chat(alice, str(ObjectId()))


def test_group_chats_do_not_collide(chats, alice, bob, carol):
    first = chats.create_group_chat(alice, "Gear swap", [bob["id"], carol["id"]])
    second = chats.create_group_chat(alice, "Gear swap", [bob["id"], bob["id"], alice["id"]])

    assert first["_id"] != second["_id"]
    assert [p["role"] for p in first["participants"]] == ["admin", "member", "member"]
    assert len(second["participants"]) == 2


def test_group_chat_rules(chats, trip, alice, carol):
    with pytest.raises(ValidationFailure):
        chats.create_group_chat(alice, "Just me", [alice["id"]])
    with pytest.raises(AuthorizationFailure):
        chats.create_group_chat(carol, "Outsiders", [alice["id"]], trip_id=str(trip["_id"]))
    with pytest.raises(NotFound):
        chats.create_group_chat(alice, "Ghost trip", [carol["id"]], trip_id=str(ObjectId()))


def test_send_message_fans_out_to_every_participant(db, chats, channel, direct, alice, bob):
    chat_id = str(direct["_id"])

    message = chats.send_message(chat_id, alice, " Ready for Saturday? ")

    assert message["content"] == "Ready for Saturday?"
    rooms = sorted(room for _, _, room in channel.named("newMessage"))
    assert rooms == sorted([f"user-{alice['id']}", f"user-{bob['id']}"])
    chat = db["chat"].find_one({"_id": direct["_id"]})
    assert chat["last_message_id"] == message["_id"]


def test_whitespace_chat_message_is_rejected_and_not_stored(db, chats, channel, direct, alice):
    with pytest.raises(ValidationFailure):
        chats.send_message(str(direct["_id"]), alice, "    ")
    assert db["message"].count_documents({}) == 0
    assert channel.events == []


def test_outsider_cannot_use_chat(chats, direct, carol):
    chat_id = str(direct["_id"])
    with pytest.raises(AuthorizationFailure, match="Access denied to this chat"):
        chats.get_chat_details(chat_id, carol)
    with pytest.raises(AuthorizationFailure):
        chats.send_message(chat_id, carol, "hi")
    with pytest.raises(AuthorizationFailure):
        chats.get_chat_messages(chat_id, carol)


def test_messages_are_chronological_and_skip_deleted(chats, direct, alice, bob):
    chat_id = str(direct["_id"])
    first = chats.send_message(chat_id, alice, "one")
    chats.send_message(chat_id, bob, "two")
    chats.send_message(chat_id, alice, "three")

    with pytest.raises(AuthorizationFailure):
        chats.delete_message(str(first["_id"]), bob)
    chats.delete_message(str(first["_id"]), alice)

    result = chats.get_chat_messages(chat_id, bob)
    assert [m["content"] for m in result["messages"]] == ["two", "three"]
    assert result["messages"][0]["sender"]["name"] == "Bob"
    assert result["pagination"]["total_items"] == 2


def test_mark_as_read_is_idempotent(db, chats, direct, alice, bob):
    chat_id = str(direct["_id"])
    chats.send_message(chat_id, alice, "one")
    chats.send_message(chat_id, alice, "two")
    chats.send_message(chat_id, bob, "mine")

    assert chats.mark_as_read(chat_id, bob) == 2
    assert chats.mark_as_read(chat_id, bob) == 0
    assert db["message"].count_documents({"read_by": bob["id"]}) == 2


def test_user_chats_include_last_message(chats, direct, alice, bob, carol):
    chats.send_message(str(direct["_id"]), bob, "latest")

    result = chats.get_user_chats(alice)

    assert len(result["chats"]) == 1
    assert result["chats"][0]["last_message"]["content"] == "latest"
    assert chats.get_user_chats(carol)["chats"] == []


def test_questions_can_be_answered_once(chats, trip_chat, trip, alice, bob):
    question = chats.send_message(str(trip_chat["_id"]), bob, "Do we need crampons?", "question")
    assert question["is_answered"] is False
    assert question["trip_id"] == str(trip["_id"])

    answered = chats.answer_question(str(question["_id"]), alice, "  Yes, and an ice axe.  ")

    assert answered["is_answered"] is True
    assert answered["answer"] == "Yes, and an ice axe."
    assert answered["answerer"]["name"] == "Alice"
    with pytest.raises(BusinessRuleViolation):
        chats.answer_question(str(question["_id"]), bob, "No")


def test_answer_rules(chats, trip_chat, alice):
    text = chats.send_message(str(trip_chat["_id"]), alice, "Just chatting")
    with pytest.raises(ValidationFailure, match="not a question"):
        chats.answer_question(str(text["_id"]), alice, "answer")
    with pytest.raises(ValidationFailure):
        chats.answer_question(str(text["_id"]), alice, "   ")
    with pytest.raises(NotFound):
        chats.answer_question(str(ObjectId()), alice, "answer")


def test_qa_listing_filters_by_answered(chats, trip_chat, trip, alice, bob):
    chat_id = str(trip_chat["_id"])
    first = chats.send_message(chat_id, bob, "Where do we meet?", "question")
    chats.send_message(chat_id, bob, "What time?", "question")
    chats.send_message(chat_id, alice, "Not a question")
    chats.answer_question(str(first["_id"]), alice, "Train station")

    trip_id = str(trip["_id"])
    assert chats.get_qa_messages(trip_id)["pagination"]["total_items"] == 2
    answered = chats.get_qa_messages(trip_id, answered="true")["messages"]
    assert [m["content"] for m in answered] == ["Where do we meet?"]
    open_questions = chats.get_qa_messages(trip_id, answered="false")["messages"]
    assert [m["content"] for m in open_questions] == ["What time?"]


def test_direct_chat_insert_race_returns_existing(db, chats, direct, alice, bob):
    chat_collection = db["chat"]
    real_find_one = chat_collection.find_one
    lookups = []

    def first_lookup_misses(*args, **kwargs):
        lookups.append(args)
        return None if len(lookups) == 1 else real_find_one(*args, **kwargs)

    with patch.object(chat_collection, "find_one", side_effect=first_lookup_misses):
        chat, created = chats.create_direct_chat(bob, alice["id"])

    assert created is False
    assert chat["_id"] == direct["_id"]
    assert len(lookups) == 2
    assert db["chat"].count_documents({"chat_type": "direct"}) == 1


def test_blank_group_name_is_rejected(db, chats, alice, bob):
    with pytest.raises(ValidationFailure, match="name"):
        chats.create_group_chat(alice, "   ", [bob["id"]])
    assert db["chat"].count_documents({}) == 0

    chat = chats.create_group_chat(alice, "  Ridge team ", [bob["id"]])
    assert chat["name"] == "Ridge team"
