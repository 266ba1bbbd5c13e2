"""
Test suite for provider registry, credential encryption, runtime options, prompt
assembly and small helpers.

System role: Verification of configuration plumbing shared by indexing and retrieval
"""

from dataclasses import replace

import pytest

from kb_rag.crypto import decrypt_secret, encrypt_secret
from kb_rag.exceptions import ConfigurationError, CredentialError, UnsupportedBackendError
from kb_rag.generation import (
    CONTEXT_SEPARATOR,
    AnswerMode,
    build_context,
    build_prompt,
    is_restrictive,
    resolve_mode,
)
from kb_rag.models import ProviderConfig, RagSetting
from kb_rag.options import load_rag_options, parse_hosts
from kb_rag.providers.base import BackendKind
from kb_rag.providers.registry import (
    activate_provider,
    compatible_providers,
    get_active_provider,
    load_active_settings,
    repair_embedding_defaults,
)
from kb_rag.utils import chunk_id_from_match, is_allowed_url, parse_host


class TestCrypto:
    """Test suite for credential encryption."""

    def test_encrypted_secret_should_decrypt_to_original(self) -> None:
        stored = encrypt_secret("sk-live-123")

        assert stored.startswith("enc:")
        assert "sk-live-123" not in stored
        assert decrypt_secret(stored) == "sk-live-123"

    def test_plaintext_and_empty_values_should_pass_through(self) -> None:
        assert decrypt_secret("sk-plain") == "sk-plain"
        assert decrypt_secret(None) == ""
        assert encrypt_secret("") == ""

    def test_tampered_token_should_raise(self) -> None:
        with pytest.raises(CredentialError):
            decrypt_secret("enc:not-a-fernet-token")


class TestRegistry:
    """Test suite for active provider lookup and activation."""

    def test_activate_should_leave_exactly_one_active(self, db, make_provider) -> None:
        # Arrange
        first = make_provider(name="first", kind="openai", active=True)
        second = make_provider(name="second", kind="gemini", active=False)

        # Act
        activate_provider(db, second)
        db.commit()

        # Assert
        active = db.query(ProviderConfig).filter(ProviderConfig.is_active.is_(True)).all()
        assert [p.id for p in active] == [second]
        assert get_active_provider(db).id == second
        assert db.get(ProviderConfig, first).is_active is False

    def test_activate_unknown_provider_should_raise(self, db) -> None:
        with pytest.raises(ConfigurationError):
            activate_provider(db, 404)

    def test_settings_should_decrypt_credential(self, db, make_provider) -> None:
        make_provider(kind="openai", api_key=encrypt_secret("sk-secret"), capabilities={"max_output": 800})

        config = load_active_settings(db)

        assert config.kind == BackendKind.OPENAI
        assert config.api_key == "sk-secret"
        assert config.max_output_tokens == 800
        assert "sk-secret" not in repr(config)

    def test_unknown_kind_should_raise(self, db, make_provider) -> None:
        make_provider(kind="llama-server")

        with pytest.raises(UnsupportedBackendError):
            load_active_settings(db)

    @pytest.mark.parametrize("value", ["OpenAI", " gemini ", "custom"])
    def test_backend_kind_should_parse_case_insensitively(self, value) -> None:
        assert BackendKind.parse(value).value == value.strip().lower()

    def test_repair_should_fill_known_backend_defaults(self, db, make_provider) -> None:
        row = db.get(ProviderConfig, make_provider(kind="anthropic"))

        repaired = repair_embedding_defaults(db, row)

        assert repaired == ["embedding_model", "embedding_dimension", "supports_embedding"]
        assert row.embedding_model == "voyage-2"
        assert row.embedding_dimension == 1024

    def test_repair_should_leave_custom_untouched(self, db, make_provider) -> None:
        row = db.get(ProviderConfig, make_provider(kind="custom"))

        assert repair_embedding_defaults(db, row) == []

    def test_compatible_providers_should_require_embedding_path(self, db, make_provider) -> None:
        make_provider(name="openai", kind="openai", active=False)
        make_provider(name="bare-custom", kind="custom", active=False)
        make_provider(name="embed-custom", kind="custom", active=False, embedding_base_url="http://embed.local")
        make_provider(name="disabled", kind="gemini", active=False, supports_embedding=False)

        names = [p["name"] for p in compatible_providers(db)]

        assert names == ["openai", "embed-custom"]


class TestRagOptions:
    """Test suite for runtime option loading."""

    def _set(self, db, **values) -> None:
        for key, value in values.items():
            db.add(RagSetting(key=key, value=value))
        db.commit()

    def test_defaults_should_come_from_settings(self) -> None:
        options = load_rag_options(None)

        assert options.chunk_size == 1024
        assert options.chunk_overlap == 200
        assert options.top_k == 5
        assert options.no_data_message

    def test_rows_should_override_defaults(self, db) -> None:
        self._set(
            db,
            rag_top_k="8",
            rag_min_score="0.35",
            rag_strict_mode="false",
            rag_super_strict_mode="yes",
            rag_allowed_hosts="www.Shop.com, docs.shop.com\nhelp.shop.com",
            ai_no_data_message="No idea.",
        )

        options = load_rag_options(db)

        assert options.top_k == 8
        assert options.min_score == 0.35
        assert options.strict_mode is False
        assert options.super_strict_mode is True
        assert options.allowed_hosts == ["shop.com", "docs.shop.com", "help.shop.com"]
        assert options.no_data_message == "No idea."

    def test_invalid_values_should_be_ignored(self, db) -> None:
        self._set(db, rag_top_k="many", rag_strict_mode="maybe", rag_temperature="hot")

        options = load_rag_options(db)

        assert options.top_k == 5
        assert options.strict_mode is True
        assert options.temperature == 0.05

    @pytest.mark.parametrize("size,overlap", [("100", "100"), ("100", "0"), ("50", "80")])
    def test_invalid_chunk_parameters_should_fall_back_together(self, db, size, overlap) -> None:
        self._set(db, rag_chunk_size=size, rag_chunk_overlap=overlap)

        options = load_rag_options(db)

        assert (options.chunk_size, options.chunk_overlap) == (1024, 200)

    def test_empty_no_data_message_should_fall_back(self, db) -> None:
        self._set(db, ai_no_data_message="")

        assert load_rag_options(db).no_data_message == load_rag_options(None).no_data_message

    def test_parse_hosts_should_skip_blanks(self) -> None:
        assert parse_hosts(" , www.a.com,,B.org ") == ["a.com", "b.org"]


class TestPrompts:
    """Test suite for fidelity modes and prompt assembly."""

    @pytest.mark.parametrize(
        "strict,super_strict,expected",
        [
            (False, False, AnswerMode.NORMAL),
            (True, False, AnswerMode.STRICT),
            (False, True, AnswerMode.SUPER_STRICT),
            (True, True, AnswerMode.SUPER_STRICT),
        ],
    )
    def test_toggles_should_resolve_mode(self, options, strict, super_strict, expected) -> None:
        opts = replace(options, strict_mode=strict, super_strict_mode=super_strict)

        assert resolve_mode(opts) == expected

    def test_override_should_win_over_toggles(self, options) -> None:
        opts = replace(options, super_strict_mode=True)

        assert resolve_mode(opts, "normal") == AnswerMode.NORMAL

    def test_unknown_override_should_raise(self, options) -> None:
        with pytest.raises(ValueError):
            resolve_mode(options, "creative")

    def test_restrictive_policy(self, options) -> None:
        assert is_restrictive(AnswerMode.STRICT, replace(options, refuse_without_context=False)) is True
        assert is_restrictive(AnswerMode.NORMAL, replace(options, refuse_without_context=False)) is False
        assert is_restrictive(AnswerMode.NORMAL, replace(options, refuse_without_context=True)) is True

    def test_prompt_should_substitute_no_data_placeholder(self, options) -> None:
        opts = replace(options, strict_preamble='Reply "{no_data}" if unsure. Keep {braces}.', no_data_message="N/A")

        prompt = build_prompt("  Where is my order? ", "ctx", AnswerMode.STRICT, opts)

        assert prompt.startswith('Reply "N/A" if unsure. Keep {braces}.')
        assert "--- CONTEXT START ---\nctx\n--- CONTEXT END ---" in prompt
        assert prompt.endswith('User question: "Where is my order?"\n\nAnswer:')

    def test_context_should_join_non_empty_passages(self) -> None:
        assert build_context([" first ", "", "  ", "second"]) == f"first{CONTEXT_SEPARATOR}second"


class TestUtils:
    """Test suite for URL and id helpers."""

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://WWW.Example.com/path?q=1", "example.com"),
            ("example.com/docs", "example.com"),
            ("http://docs.example.com:8080/", "docs.example.com"),
            ("", None),
            (None, None),
        ],
    )
    def test_parse_host(self, url, expected) -> None:
        assert parse_host(url) == expected

    def test_missing_url_should_fail_non_empty_allow_list(self) -> None:
        assert is_allowed_url(None, ["example.com"]) is False
        assert is_allowed_url(None, []) is True

    @pytest.mark.parametrize(
        "match_id,metadata,expected",
        [
            ("anything", {"chunk_id": 42.0}, 42),
            ("entry_3_chunk_17", {}, 17),
            ("entry_3_chunk_17", {"chunk_id": "bad"}, 17),
            ("opaque-id", {}, None),
        ],
    )
    def test_chunk_id_from_match(self, match_id, metadata, expected) -> None:
        assert chunk_id_from_match(match_id, metadata) == expected
