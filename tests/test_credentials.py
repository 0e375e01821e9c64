from vaultsync.service.credentials import (
    generate_opaque_token,
    is_token_digest,
    token_digest,
    verify_password,
)


class TestVerifyPassword:
    """Constant-time comparison of client-side password hashes."""

    def test_equal_hashes_match(self):
        assert verify_password("abc123==", "abc123==")

    def test_different_hashes_do_not_match(self):
        assert not verify_password("abc123==", "abc124==")
        assert not verify_password("Xbc123==", "abc123==")

    def test_length_mismatch(self):
        assert not verify_password("abc", "abcd")
        assert not verify_password("", "a")

    def test_none_never_matches(self):
        assert not verify_password(None, "abc")
        assert not verify_password("abc", None)

    def test_unpaired_surrogates_compare_without_error(self):
        assert not verify_password("\ud800", "abc")
        assert verify_password("\ud800", "\ud800")


class TestOpaqueTokens:
    def test_tokens_are_unique_and_urlsafe(self):
        tokens = {generate_opaque_token() for _ in range(50)}
        assert len(tokens) == 50
        for token in tokens:
            assert "=" not in token
            assert "+" not in token and "/" not in token

    def test_digest_is_prefixed_and_stable(self):
        digest = token_digest("hello")
        assert digest == (
            "sha256:2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
        )
        assert is_token_digest(digest)
        assert not is_token_digest("hello")

    def test_digest_of_unpaired_surrogate(self):
        assert is_token_digest(token_digest("\ud800"))
