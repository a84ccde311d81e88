# tests/test_security.py

from datetime import timedelta

from jose import jwt

from api import security


def test_password_hash_roundtrip():
    hashed = security.get_password_hash("hunter2")
    assert hashed != "hunter2"
    assert security.verify_password("hunter2", hashed)
    assert not security.verify_password("wrong", hashed)


def test_token_grants_only_its_tree():
    token = security.create_tree_access_token("tree-a")
    assert security.token_grants_tree(token, "tree-a")
    assert not security.token_grants_tree(token, "tree-b")


def test_expired_token_is_refused():
    token = security.create_tree_access_token("tree-a", expires_delta=timedelta(seconds=-5))
    assert not security.token_grants_tree(token, "tree-a")


def test_garbage_and_missing_tokens_are_refused():
    assert not security.token_grants_tree(None, "tree-a")
    assert not security.token_grants_tree("not-a-jwt", "tree-a")


def test_token_without_tree_scope_is_refused():
    token = jwt.encode({"sub": "tree-a"}, "testsecretkey", algorithm=security.ALGORITHM)
    assert not security.token_grants_tree(token, "tree-a")
