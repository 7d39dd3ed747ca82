"""
Tests for Cache Keys and Request Identity

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-06
"""

import pytest

from promptlens_core.cache_keys import CacheKeyFactory, edit_fingerprint, fingerprint_document
from promptlens_core.errors import ValidationError
from promptlens_core.types import CustomSuggestionRequest, EditEntry, SuggestionRequest

from conftest import build_request


class TestEditFingerprint:
    """Tests for edit_fingerprint()."""

    def test_empty_history(self):
        """Test empty history yields the sentinel."""
        assert edit_fingerprint([]) == "none"
        assert edit_fingerprint(()) == "none"

    def test_short_hex_digest(self):
        """Test fingerprint is a 16-char hex digest."""
        fp = edit_fingerprint([EditEntry(original="warm light", category="lighting")])
        assert len(fp) == 16
        int(fp, 16)

    def test_only_last_five_edits_count(self):
        """Test edits older than the window do not affect the fingerprint."""
        recent = [EditEntry(original=f"edit {i}", category="style") for i in range(5)]
        a = [EditEntry(original="ancient one")] + recent
        b = [EditEntry(original="ancient two"), EditEntry(original="older")] + recent
        assert edit_fingerprint(a) == edit_fingerprint(b) == edit_fingerprint(recent)

    def test_original_truncated_to_ten_chars(self):
        """Test only the first ten characters of each original are used."""
        a = [EditEntry(original="0123456789-first")]
        b = [EditEntry(original="0123456789-second")]
        assert edit_fingerprint(a) == edit_fingerprint(b)

    def test_category_and_order_matter(self):
        """Test category and edit order change the fingerprint."""
        x = EditEntry(original="neon", category="lighting")
        y = EditEntry(original="dolly", category="camera")
        assert edit_fingerprint([x, y]) != edit_fingerprint([y, x])
        assert edit_fingerprint([x]) != edit_fingerprint([EditEntry(original="neon")])

    def test_missing_category_placeholder(self):
        """Test a missing category is equivalent to the 'n' placeholder."""
        assert edit_fingerprint([EditEntry(original="neon")]) == edit_fingerprint(
            [EditEntry(original="neon", category="n")]
        )


class TestFingerprintDocument:
    """Tests for fingerprint_document()."""

    def test_empty(self):
        """Test empty documents have no fingerprint."""
        assert fingerprint_document("") == ""
        assert fingerprint_document(None) == ""

    def test_bounded_output(self):
        """Test output size does not depend on document length."""
        assert len(fingerprint_document("short")) == 32
        assert len(fingerprint_document("x" * 1_000_000)) == 32

    def test_tail_edit_changes_fingerprint(self):
        """Test an edit at the end of a long document is detected."""
        base = "a" * 5000
        assert fingerprint_document(base + "end") != fingerprint_document(base + "END")

    def test_length_change_detected(self):
        """Test an insertion in the middle changes the fingerprint."""
        head, tail = "h" * 2000, "t" * 500
        assert fingerprint_document(head + "m" * 100 + tail) != fingerprint_document(head + "m" * 101 + tail)

    def test_same_length_middle_edit_detected(self):
        """Test a same-length edit far from both ends changes the fingerprint."""
        before = "a" * 3000 + "sunset" + "b" * 3000
        after = "a" * 3000 + "sunris" + "b" * 3000
        assert len(before) == len(after)
        assert fingerprint_document(before) != fingerprint_document(after)

    def test_chunking_does_not_change_digest(self):
        """Test the digest covers the whole text whatever the chunk size."""
        text = "The lighthouse keeper climbs the stairs. " * 500
        assert fingerprint_document(text, chunk_chars=7) == fingerprint_document(text)
        assert fingerprint_document(text[:-1] + "!") != fingerprint_document(text)


class TestCacheKeyFactory:
    """Tests for CacheKeyFactory."""

    def test_deterministic(self):
        """Test identical inputs produce identical keys, across instances."""
        req = build_request()
        assert CacheKeyFactory().build_key(req) == CacheKeyFactory().build_key(build_request())

    def test_edit_fingerprint_alone_changes_key(self):
        """Test changing only the edit history changes the key."""
        factory = CacheKeyFactory()
        before = build_request()
        after = build_request(edit_history_tail=(EditEntry(original="blue hour", category="lighting.time"),))
        assert before.identity()[:3] == after.identity()[:3]
        assert factory.build_key(before) != factory.build_key(after)

    def test_key_format(self):
        """Test keys are namespaced and scoped by document id."""
        factory = CacheKeyFactory(namespace="enh")
        key = factory.build_key(build_request(document_id="doc-42"))
        assert key.startswith(factory.build_prefix("doc-42"))
        assert key.startswith("enh:doc-42:")
        assert factory.build_key(build_request(document_id=None)).startswith("enh:_:")

    def test_bounded_key_length(self):
        """Test key length does not grow with inputs."""
        factory = CacheKeyFactory()
        small = factory.build_key(build_request(highlighted_text="a"))
        large = factory.build_key(build_request(highlighted_text="b" * 500, context_before="c" * 10000))
        assert len(small) == len(large)

    def test_context_outside_window_ignored(self):
        """Test only the nearest context_window characters matter."""
        factory = CacheKeyFactory(context_window=10)
        a = build_request(context_before="far away text then near text ")
        b = build_request(context_before="something else near text ")
        assert factory.build_key(a) == factory.build_key(b)

    def test_context_inside_window_matters(self):
        """Test context next to the highlight changes the key."""
        factory = CacheKeyFactory()
        assert factory.build_key(build_request(context_after=" at dusk")) != factory.build_key(
            build_request(context_after=" at noon")
        )

    @pytest.mark.parametrize(
        "field,value",
        [
            ("semantic_category", "lighting.time"),
            ("document_mode", "image"),
            ("full_document_fingerprint", "doc-fp-2"),
            ("highlighted_text", "blue hour"),
        ],
    )
    def test_inputs_change_key(self, field, value):
        """Test every keyed input participates in the key."""
        factory = CacheKeyFactory()
        assert factory.build_key(build_request()) != factory.build_key(build_request(**{field: value}))

    def test_placeholder_flag_changes_key(self):
        """Test a placeholder reading of the same words gets its own key."""
        factory = CacheKeyFactory(context_window=0)
        listed = build_request(highlighted_text="oak", context_before="Material: ", context_after=" is old.")
        prose = build_request(highlighted_text="oak", context_before="The ", context_after=" is old.")
        assert factory.build_key(listed) != factory.build_key(prose)

    def test_custom_key_shares_document_prefix(self):
        """Test free-text request keys live under the document prefix."""
        factory = CacheKeyFactory(namespace="enh")
        req = CustomSuggestionRequest("golden hour", "make it moodier", document_id="doc-42")
        key = factory.build_custom_key(req)
        assert key.startswith(factory.build_prefix("doc-42"))
        assert key != factory.build_custom_key(
            CustomSuggestionRequest("golden hour", "make it brighter", document_id="doc-42")
        )
        assert factory.build_custom_key(
            CustomSuggestionRequest("golden hour", "make it moodier", document_text="x" * 3000 + "a" + "y" * 3000)
        ) != factory.build_custom_key(
            CustomSuggestionRequest("golden hour", "make it moodier", document_text="x" * 3000 + "b" + "y" * 3000)
        )

    @pytest.mark.parametrize("doc_id", ["a:b", "", "   ", None])
    def test_prefix_rejects_bad_document_ids(self, doc_id):
        """Test a prefix is never built from an id that could span documents."""
        with pytest.raises(ValidationError):
            CacheKeyFactory().build_prefix(doc_id)


class TestSuggestionRequest:
    """Tests for request identity and validation."""

    def test_identity_ignores_category(self):
        """Test identity is the selection plus edit fingerprint."""
        a = build_request(semantic_category="lighting")
        b = build_request(semantic_category="style")
        assert a.identity() == b.identity()
        assert a.identity()[3] == "none"

    def test_create_fingerprints_document(self):
        """Test create() hashes the full text and trims edit history."""
        history = [{"original": f"e{i}", "category": "style"} for i in range(15)]
        req = SuggestionRequest.create(
            "golden hour",
            semantic_category="lighting.time",
            edit_history=history,
            document_text="A woman walks along the pier at golden hour.",
        )
        assert len(req.edit_history_tail) == 10
        assert req.edit_history_tail[-1].original == "e14"
        assert req.full_document_fingerprint == fingerprint_document(
            "A woman walks along the pier at golden hour."
        )

    @pytest.mark.parametrize(
        "overrides",
        [
            {"highlighted_text": ""},
            {"highlighted_text": "   "},
            {"highlighted_text": "x" * 501},
            {"semantic_category": ""},
            {"document_mode": "audio"},
            {"edit_history_tail": tuple(EditEntry(original=str(i)) for i in range(11))},
            {"document_id": "doc:1"},
            {"document_id": ""},
        ],
    )
    def test_invalid_requests(self, overrides):
        """Test malformed requests are rejected."""
        with pytest.raises(ValidationError) as exc:
            build_request(**overrides).validate()
        assert exc.value.reason == "invalid_request"

    def test_valid_request_returns_self(self):
        """Test validate() returns the request for chaining."""
        req = build_request()
        assert req.validate() is req


class TestCustomSuggestionRequest:
    """Tests for free-text request validation."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"highlighted_text": " "},
            {"custom_request": ""},
            {"custom_request": "x" * 501},
            {"document_id": "a:b"},
        ],
    )
    def test_invalid(self, overrides):
        """Test malformed free-text requests are rejected."""
        fields = {"highlighted_text": "golden hour", "custom_request": "make it moodier"}
        fields.update(overrides)
        with pytest.raises(ValidationError):
            CustomSuggestionRequest(**fields).validate()

    def test_identity_separates_requests(self):
        """Test the free-text request is part of the identity."""
        a = CustomSuggestionRequest("golden hour", "make it moodier")
        b = CustomSuggestionRequest("golden hour", "make it brighter")
        assert a.identity() != b.identity()
        assert a.identity()[0] == "custom"
