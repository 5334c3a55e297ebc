"""Tests for synthetic file and directory names."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from kivrafs.models import Attachment
from kivrafs.naming import (
    MAX_COMPONENT_LENGTH,
    assign_unique_names,
    attachment_file_name,
    extension_for,
    item_dir_name,
    sanitize,
)

from conftest import make_item


class TestSanitize:
    """Tests for sanitize()."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Invoice", "Invoice"),
            ("a/b", "a_b"),
            ("a\\b:c*d?e\"f<g>h|i", "a_b_c_d_e_f_g_h_i"),
            ("nul\x00byte", "nul_byte"),
            ("tab\tand\nnewline", "tab_and_newline"),
            ("  lots   of   space  ", "lots_of_space"),
            ("...hidden", "hidden"),
            ("Räkning från Skatteverket", "Räkning_från_Skatteverket"),
        ],
    )
    def test_substitutions(self, raw: str, expected: str) -> None:
        """Unsafe characters and whitespace become underscores."""
        assert sanitize(raw) == expected

    def test_empty_becomes_untitled(self) -> None:
        """Empty or all-dot input still yields a usable name."""
        assert sanitize("") == "untitled"
        assert sanitize(None) == "untitled"
        assert sanitize("...") == "untitled"

    def test_length_capped(self) -> None:
        """Long input is truncated."""
        assert len(sanitize("x" * 500)) == MAX_COMPONENT_LENGTH

    def test_deterministic(self) -> None:
        """Same input, same output."""
        assert sanitize("Faktura: 2024/01") == sanitize("Faktura: 2024/01")


class TestExtension:
    """Tests for extension_for()."""

    def test_keeps_name_extension(self) -> None:
        """An attachment's own extension wins."""
        att = Attachment(index=0, name="scan.JPG", content_type="application/pdf")
        assert extension_for(att) == ".JPG"

    @pytest.mark.parametrize(
        "content_type, ext",
        [
            ("application/pdf", ".pdf"),
            ("text/html; charset=utf-8", ".html"),
            ("text/plain", ".txt"),
            ("application/x-unknown-thing", ".bin"),
        ],
    )
    def test_from_content_type(self, content_type: str, ext: str) -> None:
        """Without a usable name the content type decides."""
        att = Attachment(index=0, content_type=content_type)
        assert extension_for(att) == ext

    def test_ignores_odd_suffix(self) -> None:
        """A name whose suffix is not a plain extension falls back to the type."""
        att = Attachment(index=0, name="report.final version", content_type="application/pdf")
        assert extension_for(att) == ".pdf"


class TestNames:
    """Tests for item and attachment names."""

    def test_item_dir_name(self) -> None:
        """Date, sender and subject joined by underscores."""
        item = make_item("k1", subject="Invoice January", sender_name="Acme Energy")
        assert item_dir_name(item) == "2024-01-15_Acme_Energy_Invoice_January"

    def test_attachment_named(self) -> None:
        """A named attachment uses its own stem and extension."""
        item = make_item(
            "k1",
            sender_name="Acme",
            created_at=datetime(2024, 1, 15, 8, 30, 5, tzinfo=timezone.utc),
        )
        att = Attachment(index=0, name="invoice 01.pdf", content_type="application/pdf")
        assert attachment_file_name(item, att) == "2024-01-15_083005_Acme_0_invoice_01.pdf"

    def test_attachment_unnamed_uses_subject(self) -> None:
        """An unnamed attachment falls back to the subject and content type."""
        item = make_item("k1", subject="Welcome", sender_name="Bank")
        att = Attachment(index=1, content_type="text/html")
        assert attachment_file_name(item, att) == "2024-01-15_083000_Bank_1_Welcome.html"


class TestAssignUniqueNames:
    """Tests for collision handling."""

    def test_unique_names_untouched(self) -> None:
        """No collision, no suffix."""
        assert assign_unique_names([(2, "b"), (1, "a")]) == {1: "a", 2: "b"}

    def test_later_key_gets_suffix(self) -> None:
        """The higher key is disambiguated; the lower keeps its name."""
        names = assign_unique_names([(7, "Invoice"), (3, "Invoice")])
        assert names == {3: "Invoice", 7: "Invoice_7"}

    def test_suffix_before_extension(self) -> None:
        """For files the suffix goes before the extension."""
        names = assign_unique_names([(0, "a.pdf"), (1, "a.pdf")], keep_extension=True)
        assert names == {0: "a.pdf", 1: "a_1.pdf"}

    def test_adding_entry_keeps_existing_names(self) -> None:
        """A new, higher key never renames what was there before."""
        before = assign_unique_names([(1, "x"), (2, "x")])
        after = assign_unique_names([(1, "x"), (2, "x"), (3, "x")])
        assert after[1] == before[1]
        assert after[2] == before[2]
        assert len(set(after.values())) == 3

    def test_suffix_collision_resolved(self) -> None:
        """A suffixed name that is itself taken is suffixed again."""
        names = assign_unique_names([(1, "x_3"), (2, "x"), (3, "x")])
        assert len(set(names.values())) == 3
        assert names[1] == "x_3"

    def test_reserved_names_not_reused(self) -> None:
        """Names handed out earlier stay taken even if their owner is gone."""
        names = assign_unique_names([(5, "x")], reserved=["x"])
        assert names == {5: "x_5"}
