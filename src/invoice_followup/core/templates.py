"""
Email template catalog and renderer.

Templates use ``{{NAME}}`` placeholders and ``{{#if NAME}}...{{/if}}``
blocks that are kept only when the variable is set to a truthy value.
"""

import html
import re
from dataclasses import dataclass
from typing import Dict, Mapping, Tuple

from invoice_followup.core.exceptions import UnknownTemplateError


_IF_BLOCK = re.compile(r"\{\{#if (\w+)\}\}\n?(.*?)\{\{/if\}\}\n?", re.DOTALL)
_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")
_URL = re.compile(r"https?://[^\s<>\"']+")

_FALSY = frozenset(["", "false", "0", "none", "null"])


@dataclass(frozen=True)
class EmailTemplate:
    """A subject/body pair with placeholders."""
    id: str
    name: str
    subject: str
    content: str
    variables: Tuple[str, ...]


@dataclass(frozen=True)
class RenderedEmail:
    """A fully rendered email ready for the transport."""
    template_id: str
    subject: str
    text: str
    html: str


_SIGNATURE = """
{{USER_NAME}}

--
{{COMPANY_NAME}}
{{USER_EMAIL}}"""

_PAYMENT_VARS = (
    "CLIENT_NAME", "INVOICE_NUMBER", "AMOUNT", "DUE_DATE", "DAYS_OVERDUE",
    "PAYMENT_LINK", "USER_NAME", "COMPANY_NAME", "USER_EMAIL",
)


EMAIL_TEMPLATES: Dict[str, EmailTemplate] = {
    template.id: template
    for template in (
        EmailTemplate(
            id="payment-reminder-gentle",
            name="Gentle Payment Reminder",
            subject="Friendly reminder: {{INVOICE_NUMBER}} payment",
            content="""Hi {{CLIENT_NAME}},

I hope this email finds you well! I wanted to gently follow up on invoice {{INVOICE_NUMBER}} for {{AMOUNT}}, which was due on {{DUE_DATE}}.

I know things can get busy, so I thought I'd send a friendly reminder. If you've already sent the payment, please disregard this message.

{{#if PAYMENT_LINK}}
For your convenience, you can pay securely online: {{PAYMENT_LINK}}
{{/if}}
If you have any questions or need to discuss the payment terms, please don't hesitate to reach out. I'm here to help!

Best regards,""" + _SIGNATURE,
            variables=_PAYMENT_VARS,
        ),
        EmailTemplate(
            id="payment-reminder-standard",
            name="Standard Payment Reminder",
            subject="Payment due: Invoice {{INVOICE_NUMBER}}",
            content="""Dear {{CLIENT_NAME}},

I hope you're doing well. I'm writing to follow up on invoice {{INVOICE_NUMBER}} for {{AMOUNT}}, which was due on {{DUE_DATE}}.

This is a friendly reminder that payment is now {{DAYS_OVERDUE}} days past due. If you've already processed this payment, please let me know so I can update my records.

{{#if PAYMENT_LINK}}
You can pay securely online using this link: {{PAYMENT_LINK}}
{{/if}}
If there are any issues or if you need to discuss payment arrangements, please reach out to me as soon as possible.

Thank you for your attention to this matter.

Best regards,""" + _SIGNATURE,
            variables=_PAYMENT_VARS,
        ),
        EmailTemplate(
            id="payment-reminder-firm",
            name="Firm Payment Reminder",
            subject="Urgent: Payment required for {{INVOICE_NUMBER}}",
            content="""Dear {{CLIENT_NAME}},

This is an urgent reminder regarding invoice {{INVOICE_NUMBER}} for {{AMOUNT}}, which is now {{DAYS_OVERDUE}} days overdue (due date: {{DUE_DATE}}).

Despite previous reminders, this payment remains outstanding. To maintain our professional relationship and avoid any service interruptions, please process this payment immediately.

{{#if PAYMENT_LINK}}
Pay now: {{PAYMENT_LINK}}
{{/if}}
If you're experiencing any issues with payment or need to discuss this matter, please contact me within 48 hours.

Thank you for your immediate attention.
""" + _SIGNATURE,
            variables=_PAYMENT_VARS,
        ),
        EmailTemplate(
            id="payment-reminder-final",
            name="Final Payment Notice",
            subject="FINAL NOTICE: Payment required for {{INVOICE_NUMBER}}",
            content="""Dear {{CLIENT_NAME}},

This is a final notice regarding the outstanding payment for invoice {{INVOICE_NUMBER}} ({{AMOUNT}}), which is now {{DAYS_OVERDUE}} days overdue.

Despite multiple reminders, this payment remains unpaid. Please be advised that if payment is not received within 7 business days, we may need to:

- Suspend any ongoing services
- Engage a collections agency
- Report this matter to credit agencies

{{#if PAYMENT_LINK}}
Make payment immediately: {{PAYMENT_LINK}}
{{/if}}
To avoid these actions, please contact me immediately to arrange payment or discuss this matter.
""" + _SIGNATURE,
            variables=_PAYMENT_VARS,
        ),
        EmailTemplate(
            id="followup-check-in",
            name="Project Check-in",
            subject="Checking in on {{PROJECT_NAME}}",
            content="""Hi {{CLIENT_NAME}},

I hope you're having a great week! I wanted to check in on the {{PROJECT_NAME}} project and see how everything is progressing from your end.

{{#if HAS_DELIVERABLES}}
As discussed, I've completed the following deliverables:
{{DELIVERABLES_LIST}}
{{/if}}
Is there anything you need from me at this point? Any questions, feedback, or adjustments you'd like to discuss?

I'm always here to ensure the project meets your expectations and timeline.

Looking forward to hearing from you!

Best regards,""" + _SIGNATURE,
            variables=(
                "CLIENT_NAME", "PROJECT_NAME", "HAS_DELIVERABLES",
                "DELIVERABLES_LIST", "USER_NAME", "COMPANY_NAME", "USER_EMAIL",
            ),
        ),
    )
}


def get_template(template_id: str) -> EmailTemplate:
    """
    Look up a template by id.

    Raises:
        UnknownTemplateError: If the id is not in the catalog.
    """
    try:
        return EMAIL_TEMPLATES[template_id]
    except KeyError:
        raise UnknownTemplateError(template_id) from None


def template_exists(template_id: str) -> bool:
    return template_id in EMAIL_TEMPLATES


def _is_truthy(value: object) -> bool:
    return str(value).strip().lower() not in _FALSY


def substitute(text: str, variables: Mapping[str, object]) -> str:
    """Resolve conditional blocks, then placeholders. Unknown names render empty."""
    def _block(match: "re.Match[str]") -> str:
        name, body = match.group(1), match.group(2)
        return body if _is_truthy(variables.get(name, "")) else ""

    text = _IF_BLOCK.sub(_block, text)
    return _PLACEHOLDER.sub(lambda m: str(variables.get(m.group(1), "")), text)


def text_to_html(text: str) -> str:
    """Escape a plain-text body, turn URLs into links and keep line breaks."""
    escaped = html.escape(text, quote=False)
    linked = _URL.sub(lambda m: f'<a href="{m.group(0)}">{m.group(0)}</a>', escaped)
    body = linked.replace("\n", "<br>\n")
    return f"<html><body>{body}</body></html>"


def render_template(template_id: str, variables: Mapping[str, object]) -> RenderedEmail:
    """
    Render a catalog template.

    Raises:
        UnknownTemplateError: If the id is not in the catalog.
    """
    template = get_template(template_id)
    subject = substitute(template.subject, variables).strip()
    text = substitute(template.content, variables)
    return RenderedEmail(
        template_id=template_id,
        subject=subject,
        text=text,
        html=text_to_html(text),
    )
