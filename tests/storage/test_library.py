"""Tests for the owner-scoped Library and Collection."""

from skena.models import ChatSession, GlobalCharacter, Script, User


def test_scripts_newest_first(library):
    library.save_scripts("u1", [
        Script(id="old", owner_id="u1", last_updated=1),
        Script(id="new", owner_id="u1", last_updated=3),
        Script(id="mid", owner_id="u1", last_updated=2),
    ])
    assert [s.id for s in library.load_scripts("u1")] == ["new", "mid", "old"]


def test_collection_remove_deletes_on_save(library):
    library.save_scripts("u1", [Script(id="a", owner_id="u1"), Script(id="b", owner_id="u1")])
    library.save_scripts("u2", [Script(id="c", owner_id="u2")])

    scripts = library.scripts("u1")
    assert "a" in scripts and len(scripts) == 2
    assert scripts.remove("a") is True
    assert scripts.remove("a") is False
    result = scripts.save()

    assert result.deleted == ["a"]
    assert [s.id for s in library.load_scripts("u1")] == ["b"]
    assert [s.id for s in library.load_scripts("u2")] == ["c"]


def test_collection_upsert(library):
    chars = library.characters("u1")
    mira = GlobalCharacter(id="g1", owner_id="u1", name="Mira")
    chars.upsert(mira)
    chars.upsert(mira.model_copy(update={"personality": "bold"}))
    assert len(chars) == 1
    assert chars.get("g1").personality == "bold"
    chars.save()
    assert library.load_characters("u1")[0].personality == "bold"


def test_chat_sessions(library):
    assert library.get_chat_session("u1", "g1") is None
    session = ChatSession(character_id="g1", user_id="u1")
    library.save_chat_session(session)
    library.save_chat_session(ChatSession(character_id="g2", user_id="u1"))
    assert library.get_chat_session("u1", "g1").id == session.id
    assert library.get_chat_session("u2", "g1") is None


def test_users(library):
    library.save_user(User(id="u1", username="ann"))
    assert library.get_user("u1").username == "ann"
    assert library.get_user("nobody") is None
