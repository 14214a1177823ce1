"""
Rate card sheet import: header aliases, row errors, flat/tiered grouping,
overlap detection.
"""
from datetime import date

import pandas as pd
import pytest

from factories import make_card
from reconeasy.config import ReconConfig
from reconeasy.errors import InvalidInput
from reconeasy.rate_card_import import find_overlaps, import_rate_cards, normalize_header, parse_date


class TestHeaders:

    @pytest.mark.parametrize("header, field", [
        ("Marketplace", "marketplace"),
        ("Platform ID", "marketplace"),
        ("Commission %", "commission_pct"),
        ("commission_pct", "commission_pct"),
        ("Min Price ₹", "price_range_min"),
        ("price_range_max", "price_range_max"),
        ("GST %", "gst_rate"),
        ("Valid From", "effective_from"),
        ("T+ Days", "settlement_cycle_days"),
        ("Return Logistics Fee", "rto_fee"),
    ])
    def test_aliases(self, header, field):
        assert normalize_header(header) == field

    def test_unknown_header(self):
        assert normalize_header("Favourite colour") is None


class TestParseDate:

    @pytest.mark.parametrize("raw, expected", [
        ("2025-04-01", date(2025, 4, 1)),
        ("01/04/2025", date(2025, 4, 1)),
        ("04/25/2025", date(2025, 4, 25)),
        (45748, date(2025, 4, 1)),
        (pd.Timestamp("2025-04-01 10:30"), date(2025, 4, 1)),
        ("", None),
        (None, None),
    ])
    def test_formats(self, raw, expected):
        assert parse_date(raw) == expected

    @pytest.mark.parametrize("raw", ["not a date", "2025-02-30", "2025-13-01", "31/13/2025", 10**9, "99999999999"])
    def test_garbage(self, raw):
        with pytest.raises(InvalidInput, match="invalid date"):
            parse_date(raw)


def _sheet(rows):
    return pd.DataFrame(rows)


class TestImport:

    def test_flat_row(self):
        df = _sheet([{
            "Marketplace": "Amazon", "Category": "Fashion", "Commission %": "15%",
            "Shipping Fee": "₹40", "Fixed Fee": 0, "RTO Fee": None, "Packaging Fee": 5,
            "GST %": 18, "Min Price": 100, "Max Price": "5,000",
            "Effective From": "2025-01-01", "Effective To": "",
        }])
        report = import_rate_cards(df)

        assert report.summary == {"total": 1, "valid": 1, "error": 0, "cards": 1}
        card = report.cards[0]
        assert card.commission_type == "flat"
        assert card.commission_percent == 15
        assert card.global_min_price == 100
        assert card.global_max_price == 5000
        assert card.effective_to is None
        assert {f.fee_code: f.fee_value for f in card.fees} == {"shipping": 40, "packaging": 5}
        assert all(f.fee_type == "amount" for f in card.fees)
        assert card.tcs_percent == 1
        # amazon preset
        assert card.settlement_basis == "t_plus"
        assert card.t_plus_days == 7

    def test_rows_sharing_a_window_become_slabs(self):
        base = {"marketplace": "Flipkart", "category": "Apparel", "gst_rate": 18, "shipping_fee": 30,
                "effective_from": "2025-01-01", "effective_to": "2025-12-31"}
        df = _sheet([
            {**base, "price_range_min": 0, "price_range_max": 500, "commission_pct": 10},
            {**base, "price_range_min": 500, "price_range_max": None, "commission_pct": 12},
        ])
        report = import_rate_cards(df)

        assert len(report.cards) == 1
        card = report.cards[0]
        assert card.commission_type == "tiered"
        assert [(s.min_price, s.max_price, s.commission_percent) for s in card.slabs] == [
            (0, 500, 10), (500, None, 12),
        ]
        assert card.id == "flipkart:apparel:2025-01-01"
        assert card.t_plus_days == 10

    def test_broken_slab_partition_marks_all_rows(self):
        base = {"marketplace": "Myntra", "category": "Apparel", "effective_from": "2025-01-01"}
        df = _sheet([
            {**base, "price_range_min": 0, "price_range_max": 500, "commission_pct": 10},
            {**base, "price_range_min": 700, "price_range_max": None, "commission_pct": 12},
        ])
        report = import_rate_cards(df)
        assert report.cards == []
        assert [r["status"] for r in report.rows] == ["error", "error"]
        assert "gap" in report.rows[0]["message"]

    def test_row_errors_are_reported_and_skipped(self):
        df = _sheet([
            {"marketplace": "", "category": "Beauty", "commission_pct": 10, "effective_from": "2025-01-01"},
            {"marketplace": "Ajio", "category": "Beauty", "commission_pct": "ten", "effective_from": "2025-01-01"},
            {"marketplace": "Ajio", "category": "Home", "commission_pct": 9, "effective_from": None},
            {"marketplace": "Ajio", "category": "Home", "commission_pct": 9, "effective_from": "2025-01-01",
             "Settlement Cycle": 15},
        ])
        report = import_rate_cards(df)

        assert report.summary == {"total": 4, "valid": 1, "error": 3, "cards": 1}
        messages = [r["message"] for r in report.rows]
        assert "Missing marketplace/platform" in messages[0]
        assert "commission_pct" in messages[1]
        assert "Effective From" in messages[2]
        assert report.rows[3]["row"] == 4
        assert report.cards[0].t_plus_days == 15

    def test_out_of_range_commission(self):
        df = _sheet([{"marketplace": "Ajio", "category": "Home", "commission_pct": 120,
                      "effective_from": "2025-01-01"}])
        report = import_rate_cards(df)
        assert report.cards == []
        assert "commission_percent" in report.rows[0]["message"]

    def test_impossible_date_is_a_row_error(self):
        df = _sheet([
            {"marketplace": "Ajio", "category": "Home", "commission_pct": 9, "effective_from": "2025-02-30"},
            {"marketplace": "Ajio", "category": "Kids", "commission_pct": 9, "effective_from": "2025-01-01",
             "effective_to": 10**9},
            {"marketplace": "Ajio", "category": "Beauty", "commission_pct": 9, "effective_from": "2025-01-01"},
        ])
        report = import_rate_cards(df)
        assert report.summary == {"total": 3, "valid": 1, "error": 2, "cards": 1}
        assert "effective_from: invalid date: 2025-02-30" in report.rows[0]["message"]
        assert report.rows[1]["message"].startswith("effective_to: invalid date")

    def test_fractional_settlement_cycle_rejected(self):
        df = _sheet([{"marketplace": "Ajio", "category": "Home", "commission_pct": 9,
                      "effective_from": "2025-01-01", "settlement_cycle_days": 7.5}])
        report = import_rate_cards(df)
        assert report.cards == []
        assert "settlement_cycle_days" in report.rows[0]["message"]

    def test_blank_taxes_use_configured_defaults(self):
        df = _sheet([{"marketplace": "Ajio", "category": "Home", "commission_pct": 9,
                      "gst_rate": None, "effective_from": "2025-01-01"}])
        config = ReconConfig(default_gst_percent=5, default_tcs_percent=0.5)
        card = import_rate_cards(df, config).cards[0]
        assert card.gst_percent == 5
        assert card.tcs_percent == 0.5
        # without a config the built-in rates apply
        assert import_rate_cards(df).cards[0].gst_percent == 18

    def test_second_column_for_same_field_listed(self):
        df = _sheet([{"Marketplace": "Ajio", "Platform": "Myntra", "category": "Home",
                      "commission_pct": 9, "effective_from": "2025-01-01"}])
        report = import_rate_cards(df)
        assert report.unmapped_columns == ["Platform"]
        assert report.cards[0].platform_id == "Ajio"

    def test_unmapped_columns_listed(self):
        df = _sheet([{"marketplace": "Ajio", "category": "Home", "commission_pct": 9,
                      "effective_from": "2025-01-01", "Colour": "red"}])
        report = import_rate_cards(df)
        assert report.unmapped_columns == ["Colour"]
        assert report.to_dict()["summary"]["cards"] == 1


class TestOverlaps:

    def test_identical_terms_are_duplicates(self):
        old = make_card(id="old", effective_to=date(2025, 6, 30))
        new = make_card(id="new", effective_from=date(2025, 6, 1))
        [hit] = find_overlaps([new], [old])
        assert hit["status"] == "duplicate"
        assert hit["message"] == "Date overlap"
        assert hit["suggestion"]["new_from"] == "2025-07-01"

    def test_different_terms_are_similar(self):
        old = make_card(id="old")
        new = make_card(id="new", effective_from=date(2025, 6, 1), commission_percent=20, fees=[])
        [hit] = find_overlaps([new], [old])
        assert hit["status"] == "similar"
        assert hit["message"] == "Date overlap with different commission and different fees"
        assert hit["suggestion"] is None

    def test_disjoint_or_archived_ignored(self):
        old = make_card(id="old", effective_to=date(2025, 5, 31))
        archived = make_card(id="arch", archived=True)
        other = make_card(id="other", category_id="Beauty")
        new = make_card(id="new", effective_from=date(2025, 6, 1))
        assert find_overlaps([new], [old, archived, other]) == []
