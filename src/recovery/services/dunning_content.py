"""Email copy for each dunning stage."""
from dataclasses import dataclass
from html import escape

from recovery.config import settings
from recovery.models.dunning import DunningStage
from recovery.models.failed_payment import FailedPayment
from recovery.models.member import Member
from recovery.services.failure_classifier import describe_failure
from recovery.utils.currency import format_amount

UPDATE_PAYMENT_PATH = "/student/billing"

# Stage -> (subject, heading, paragraphs, link to the billing page)
STAGE_COPY = {
    DunningStage.INITIAL_FAILURE: (
        "Payment Failed: Action Required",
        "Payment Failed",
        [
            "We were unable to process your payment of {amount} for your membership.",
            "Reason: {reason}",
            "Please update your payment method in your account settings to prevent any interruption to your membership.",
        ],
        True,
    ),
    DunningStage.FIRST_REMINDER: (
        "Payment Reminder: Update Your Payment Method",
        "Payment Reminder",
        [
            "This is a reminder that we were unable to process your payment of {amount} for your membership.",
            "Please update your payment method as soon as possible to maintain uninterrupted access to classes.",
        ],
        True,
    ),
    DunningStage.SECOND_REMINDER: (
        "Urgent: Payment Update Required",
        "Urgent Payment Reminder",
        [
            "We still have not been able to process your payment of {amount} for your membership.",
            "Your membership benefits may be affected if the payment issue is not resolved soon.",
            "Please update your payment method immediately to avoid any interruptions.",
        ],
        True,
    ),
    DunningStage.FINAL_NOTICE: (
        "Final Notice: Membership At Risk",
        "Final Payment Notice",
        [
            "This is a final notice regarding your failed payment of {amount}.",
            "If your payment method is not updated within 7 days, your membership will be automatically canceled.",
            "To maintain your membership and access to classes, please update your payment information immediately.",
        ],
        True,
    ),
    DunningStage.SUBSCRIPTION_CANCELED: (
        "Your Membership Has Been Canceled",
        "Membership Canceled",
        [
            "Due to continued payment failures, your membership has been canceled.",
            "If you would like to reinstate your membership, please contact our staff or visit the gym.",
            "We value you as a member and hope to see you back soon.",
        ],
        False,
    ),
}


@dataclass(frozen=True)
class EmailContent:
    subject: str
    html_body: str
    text_body: str


def build_email(stage: DunningStage, member: Member, payment: FailedPayment) -> EmailContent:
    """
    Select and fill the copy for a dunning stage.

    Args:
        stage: Dunning stage being sent
        member: Recipient
        payment: Failed payment the workflow belongs to

    Returns:
        Subject plus HTML and plain text bodies
    """
    subject, heading, paragraphs, with_link = STAGE_COPY[stage]

    name = member.full_name or member.email
    values = {
        "amount": format_amount(payment.amount, payment.currency),
        "reason": describe_failure(payment.failure_kind),
    }
    lines = [p.format(**values) for p in paragraphs]
    link = f"{settings.app_url.rstrip('/')}{UPDATE_PAYMENT_PATH}"

    html_parts = [f"<h2>{heading}</h2>", f"<p>Hello {escape(name)},</p>"]
    html_parts.extend(f"<p>{escape(line)}</p>" for line in lines)
    text_parts = [heading, f"Hello {name},", *lines]

    if with_link:
        html_parts.append(f'<p><a href="{escape(link)}">Update Payment Method</a></p>')
        text_parts.append(link)

    return EmailContent(
        subject=subject,
        html_body="\n".join(html_parts),
        text_body="\n".join(text_parts),
    )
