from __future__ import annotations

from .models import EventType, RecipientType
from .templating import TemplateContent

_SIGNATURE = (
    "<p>Kind regards,<br>{{agency_name}}<br>{{agency_email}} | {{agency_phone}}</p>"
)

_PAYMENT_TABLE = (
    "<table>"
    "<tr><td><strong>Student</strong></td><td>{{student_name}}</td></tr>"
    "<tr><td><strong>Amount</strong></td><td>{{amount}}</td></tr>"
    "<tr><td><strong>Due date</strong></td><td>{{due_date}}</td></tr>"
    "<tr><td><strong>Institution</strong></td><td>{{college_name}} - {{branch_name}}</td></tr>"
    "</table>"
)

DEFAULT_TEMPLATES: dict[tuple[RecipientType, EventType], TemplateContent] = {
    ("student", "due_soon"): TemplateContent(
        subject="Payment Reminder - {{college_name}}",
        body_html=(
            "<p>Hi {{student_name}},</p>"
            "<p>This is a friendly reminder that a payment of <strong>{{amount}}</strong> "
            "for {{college_name}} is due on <strong>{{due_date}}</strong>.</p>"
            "<p>{{payment_instructions}}</p>" + _SIGNATURE
        ),
    ),
    ("student", "overdue"): TemplateContent(
        subject="Overdue Payment - {{college_name}}",
        body_html=(
            "<p>Hi {{student_name}},</p>"
            "<p>Our records show that your payment of <strong>{{amount}}</strong> "
            "due on <strong>{{due_date}}</strong> for {{college_name}} has not been received.</p>"
            "<p>Please arrange payment as soon as possible. {{payment_instructions}}</p>"
            "<p>If you have already paid, please ignore this message.</p>" + _SIGNATURE
        ),
    ),
    ("student", "payment_received"): TemplateContent(
        subject="Payment Received - {{college_name}}",
        body_html=(
            "<p>Hi {{student_name}},</p>"
            "<p>Thank you. We have received your payment of <strong>{{amount}}</strong> "
            "for {{college_name}} (reference {{payment_reference}}).</p>" + _SIGNATURE
        ),
    ),
    ("agency_user", "due_soon"): TemplateContent(
        subject="Payment Due Soon - {{student_name}}",
        body_html=(
            "<p>An installment is due soon.</p>" + _PAYMENT_TABLE
            + '<p><a href="{{view_link}}">View payment plan</a></p>'
        ),
    ),
    ("agency_user", "overdue"): TemplateContent(
        subject="Overdue Payment Summary - {{college_name}}",
        body_html=(
            "<p>An installment has become overdue.</p>" + _PAYMENT_TABLE
            + '<p><a href="{{view_link}}">View overdue payments</a></p>'
        ),
    ),
    ("agency_user", "payment_received"): TemplateContent(
        subject="Payment Received - {{student_name}}",
        body_html=(
            "<p>A payment has been recorded (reference {{payment_reference}}).</p>" + _PAYMENT_TABLE
            + '<p><a href="{{view_link}}">View payment plan</a></p>'
        ),
    ),
    ("partner_institution", "due_soon"): TemplateContent(
        subject="Payment Due Soon - {{student_name}}",
        body_html=(
            "<p>Dear {{college_name}} team,</p>"
            "<p>The following student payment is due soon.</p>" + _PAYMENT_TABLE + _SIGNATURE
        ),
    ),
    ("partner_institution", "overdue"): TemplateContent(
        subject="Action Required - Overdue Payment for {{student_name}}",
        body_html=(
            "<p>Dear {{college_name}} team,</p>"
            "<p>The following student payment is now overdue. "
            "Our team is following up with the student.</p>" + _PAYMENT_TABLE + _SIGNATURE
        ),
    ),
    ("partner_institution", "payment_received"): TemplateContent(
        subject="Payment Received - {{student_name}}",
        body_html=(
            "<p>Dear {{college_name}} team,</p>"
            "<p>We have received the following student payment "
            "(reference {{payment_reference}}).</p>" + _PAYMENT_TABLE + _SIGNATURE
        ),
    ),
    ("sales_agent", "due_soon"): TemplateContent(
        subject="Payment Due Soon - {{student_name}}",
        body_html=(
            "<p>A payment for your student {{student_name}} is due soon.</p>" + _PAYMENT_TABLE
            + "<p>Student contact: {{student_email}} | {{student_phone}}</p>"
            + '<p><a href="{{view_link}}">View payment plan</a></p>'
        ),
    ),
    ("sales_agent", "overdue"): TemplateContent(
        subject="Action Required - Overdue Payment for {{student_name}}",
        body_html=(
            "<p>A payment for your student {{student_name}} is overdue.</p>" + _PAYMENT_TABLE
            + "<p>Student contact: {{student_email}} | {{student_phone}}</p>"
            + '<p><a href="{{view_link}}">View payment plan</a></p>'
        ),
    ),
    ("sales_agent", "payment_received"): TemplateContent(
        subject="Payment Received - {{student_name}}",
        body_html=(
            "<p>Your student {{student_name}} has made a payment "
            "(reference {{payment_reference}}).</p>" + _PAYMENT_TABLE
            + '<p><a href="{{view_link}}">View payment plan</a></p>'
        ),
    ),
}


def default_template(recipient_type: RecipientType, event_type: EventType) -> TemplateContent:
    return DEFAULT_TEMPLATES[(recipient_type, event_type)]
