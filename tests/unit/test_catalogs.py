"""
Tests for the reminder strategy and email template catalogs.
"""

import pytest

from invoice_followup.core import (
    get_strategy,
    get_template,
    list_strategies,
    render_template,
    template_exists,
)
from invoice_followup.core.exceptions import UnknownStrategyError, UnknownTemplateError
from invoice_followup.core.templates import substitute, text_to_html


PAYMENT_VARIABLES = {
    "CLIENT_NAME": "Acme Corp",
    "INVOICE_NUMBER": "INV-001",
    "AMOUNT": "USD 1,500.00",
    "DUE_DATE": "January 1, 2024",
    "DAYS_OVERDUE": "7",
    "USER_NAME": "Sam",
    "COMPANY_NAME": "Studio",
    "USER_EMAIL": "sam@studio.test",
}


class TestStrategies:
    """Tests for the reminder strategy catalog."""

    def test_gentle_strategy_cadence(self):
        strategy = get_strategy("gentle-3-7-14")

        assert [s.offset_days for s in strategy.steps] == [3, 7, 14]
        assert strategy.steps[0].template_id == "payment-reminder-gentle"
        assert strategy.steps[-1].template_id == "payment-reminder-firm"

    def test_catalog_order_and_templates_exist(self):
        strategies = list_strategies()

        assert [s.id for s in strategies] == ["gentle-3-7-14", "professional-7-14", "firm-7-21"]
        for strategy in strategies:
            for step in strategy.steps:
                assert template_exists(step.template_id)

    def test_unknown_strategy_raises(self):
        with pytest.raises(UnknownStrategyError):
            get_strategy("aggressive-1-2-3")

    def test_to_dict(self):
        data = get_strategy("firm-7-21").to_dict()

        assert data["id"] == "firm-7-21"
        assert data["steps"] == [
            {"offset_days": 7, "template_id": "payment-reminder-firm"},
            {"offset_days": 21, "template_id": "payment-reminder-final"},
        ]


class TestSubstitute:
    """Tests for placeholder and conditional substitution."""

    def test_unknown_placeholder_renders_empty(self):
        assert substitute("Hi {{NAME}}!", {}) == "Hi !"

    def test_falsy_condition_drops_block(self):
        text = "start\n{{#if LINK}}\nPay: {{LINK}}\n{{/if}}\nend"

        assert substitute(text, {"LINK": "false"}) == "start\nend"

    def test_truthy_condition_keeps_block(self):
        text = "start\n{{#if LINK}}\nPay: {{LINK}}\n{{/if}}\nend"

        assert substitute(text, {"LINK": "https://pay.test"}) == "start\nPay: https://pay.test\nend"


class TestRenderTemplate:
    """Tests for render_template."""

    def test_gentle_reminder_with_payment_link(self):
        rendered = render_template(
            "payment-reminder-gentle",
            {**PAYMENT_VARIABLES, "PAYMENT_LINK": "https://pay.example.com/x"},
        )

        assert rendered.subject == "Friendly reminder: INV-001 payment"
        assert "invoice INV-001 for USD 1,500.00" in rendered.text
        assert "pay securely online: https://pay.example.com/x" in rendered.text
        assert '<a href="https://pay.example.com/x">' in rendered.html

    def test_payment_link_block_omitted_without_link(self):
        rendered = render_template("payment-reminder-gentle", PAYMENT_VARIABLES)

        assert "pay securely online" not in rendered.text
        assert "{{" not in rendered.text

    def test_days_overdue_in_standard_reminder(self):
        rendered = render_template("payment-reminder-standard", PAYMENT_VARIABLES)

        assert "7 days past due" in rendered.text
        assert rendered.text.rstrip().endswith("sam@studio.test")

    def test_unknown_template_raises(self):
        with pytest.raises(UnknownTemplateError):
            render_template("does-not-exist", {})

        with pytest.raises(UnknownTemplateError):
            get_template("does-not-exist")


class TestTextToHtml:
    """Tests for text_to_html."""

    def test_escapes_markup(self):
        result = text_to_html("<b>bold</b> & more")

        assert "&lt;b&gt;bold&lt;/b&gt; &amp; more" in result

    def test_keeps_line_breaks(self):
        result = text_to_html("one\ntwo")

        assert "one<br>\ntwo" in result
        assert result.startswith("<html><body>")
        assert result.endswith("</body></html>")
