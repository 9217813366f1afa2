from __future__ import annotations

# =============================
# Brevo email delivery
# =============================

import os
import html
from datetime import datetime

import sib_api_v3_sdk
from sib_api_v3_sdk.rest import ApiException

import attachments as attachment_store
import booking_db
from booking_db import log_activity, log_error
from refunds import parse_instant

BREVO_API_KEY = os.environ.get("BREVO_API_KEY", "")
SENDER_EMAIL = os.environ.get("SENDER_EMAIL", "events@chessclub.example")
SENDER_NAME = os.environ.get("SENDER_NAME", "Chess Club Events")

api_instance = None
if BREVO_API_KEY:
    try:
        configuration = sib_api_v3_sdk.Configuration()
        configuration.api_key['api-key'] = BREVO_API_KEY
        api_instance = sib_api_v3_sdk.TransactionalEmailsApi(sib_api_v3_sdk.ApiClient(configuration))
    except Exception as e:
        print(f"❌ Error initializing Brevo API instance: {e}")
        api_instance = None
else:
    print("⚠️  BREVO_API_KEY not set, email sending disabled.")


def send_email(to, subject, html_content, files=None, to_name=None):
    """Send one transactional email; returns {"success": bool, "error"?: str}"""
    if not api_instance:
        log_error("Brevo API not initialized")
        return {"success": False, "error": "Brevo API not configured"}

    try:
        message = sib_api_v3_sdk.SendSmtpEmail(
            sender={"name": SENDER_NAME, "email": SENDER_EMAIL},
            to=[{"email": to, "name": to_name or to}],
            subject=subject,
            html_content=html_content,
            attachment=[
                sib_api_v3_sdk.SendSmtpEmailAttachment(content=f['content'], name=f['filename'])
                for f in files
            ] if files else None
        )
        result = api_instance.send_transac_email(message)
        return {"success": True, "message_id": getattr(result, 'message_id', None)}
    except ApiException as e:
        log_error(f"Brevo API error sending to {to}: {e}", "api_error")
        return {"success": False, "error": f"Brevo API Error: {e.reason}"}
    except Exception as e:
        log_error(f"Failed to send email to {to}: {e}")
        return {"success": False, "error": str(e)}


def unique_recipients(recipients):
    """Deduplicate by lowercase email, keeping first-seen order"""
    seen = set()
    result = []
    for email in recipients or []:
        if isinstance(email, dict):
            email = email.get('email')
        email = (email or '').strip()
        if not email or email.lower() in seen:
            continue
        seen.add(email.lower())
        result.append(email)
    return result


def context_event(context):
    context = context or {}
    return (
        context.get('event')
        or (context.get('booking') or {}).get('event')
        or ((context.get('participant') or {}).get('booking') or {}).get('event')
        or {}
    )


def format_event_date(value):
    try:
        parsed = parse_instant(value)
    except (TypeError, ValueError):
        return str(value)
    return parsed.strftime('%A, %B %d, %Y') if parsed else 'Event Date'


def process_message_variables(text, context, organizer):
    """Fill {{placeholders}} in an organizer-written subject or message"""
    event = context_event(context)
    booking = (context or {}).get('booking') or {}
    organizer = organizer or {}

    variables = {
        'recipientName': 'Recipient',
        'eventName': event.get('title') or 'Event',
        'eventDate': format_event_date(event['start_date']) if event.get('start_date') else 'Event Date',
        'eventLocation': event.get('location') or 'Event Location',
        'organizerName': organizer.get('full_name') or 'Event Organizer',
        'organizerEmail': organizer.get('email') or '',
        'customMessage': text.replace('{{customMessage}}', '') if '{{customMessage}}' in text else text,
        'amountDue': str(booking.get('total_amount') if booking.get('total_amount') is not None else '0.00'),
    }

    processed = text
    for key, value in variables.items():
        processed = processed.replace('{{' + key + '}}', str(value))
    return processed


def render_custom_email(subject, message, organizer, context):
    event = context_event(context)
    organizer = organizer or {}
    body = '<br>'.join(html.escape(line) for line in message.splitlines())
    organizer_name = html.escape(organizer.get('full_name') or 'Event Organizer')
    organizer_email = html.escape(organizer.get('email') or SENDER_EMAIL)

    event_block = ''
    if event.get('title'):
        event_block = f"""
            <div style="background-color: #f8f8f8; padding: 20px; border-radius: 8px; border-left: 4px solid #2f5d50; margin: 20px 0;">
                <h3 style="color: #2f5d50; margin: 0 0 10px 0;">{html.escape(event['title'])}</h3>
                <p style="color: #666; margin: 0;">📅 {html.escape(format_event_date(event.get('start_date')))}</p>
                <p style="color: #666; margin: 0;">📍 {html.escape(event.get('location') or 'TBA')}</p>
            </div>"""

    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{html.escape(subject)}</title>
</head>
<body style="font-family: Arial, sans-serif; background-color: #f4f4f4; margin: 0; padding: 20px;">
    <div style="max-width: 600px; margin: 0 auto; background-color: #ffffff; border-radius: 8px; overflow: hidden;">
        <div style="background-color: #1f2a27; padding: 30px; text-align: center;">
            <h1 style="color: #f0e6d2; margin: 0; font-size: 24px;">♞ {html.escape(subject)}</h1>
        </div>
        <div style="padding: 30px;">
            {event_block}
            <p style="color: #444; line-height: 1.6;">{body}</p>
        </div>
        <div style="background-color: #f8f8f8; padding: 20px; text-align: center;">
            <p style="color: #666; margin: 0;">Sent by {organizer_name} · {organizer_email}</p>
            <p style="color: #999; font-size: 12px; margin: 8px 0 0 0;">Reply to this email to contact the organizer.</p>
        </div>
    </div>
</body>
</html>
"""


def deliver_organizer_email(organizer, recipients, subject, message, context, files_meta):
    """Resolve attachments, render and send to every recipient, then log the attempt.

    Raises AttachmentError before anything is sent when an attachment cannot be resolved.
    """
    recipients = unique_recipients(recipients)
    files = attachment_store.process_attachments(files_meta)

    processed_subject = process_message_variables(subject, context, organizer)
    processed_message = process_message_variables(message, context, organizer)
    html_content = render_custom_email(processed_subject, processed_message, organizer, context)

    successful = 0
    failed = []
    for email in recipients:
        result = send_email(email, processed_subject, html_content, files)
        if result.get('success'):
            successful += 1
        else:
            failed.append({"email": email, "error": result.get('error')})

    booking_db.insert_email_log(
        organizer.get('id'), recipients, processed_subject, processed_message,
        context, successful, len(failed), files_meta
    )

    if successful > 0:
        attachment_store.cleanup_attachments(files_meta)

    log_activity(f"Organizer email '{processed_subject}' sent to {successful}/{len(recipients)} recipients", "success")
    return {"total": len(recipients), "successful": successful, "failed": len(failed), "failures": failed}


def send_scheduled_email(email_id):
    """Deliver one scheduled email if it is still waiting"""
    email = booking_db.claim_scheduled_email(email_id)
    if not email:
        return False

    organizer = booking_db.get_profile(email['organizer_id']) or {}
    try:
        stats = deliver_organizer_email(
            organizer, email['recipients'], email['subject'], email['message'],
            email.get('context') or {}, email.get('attachments') or []
        )
    except attachment_store.AttachmentError as e:
        booking_db.finish_scheduled_email(email_id, 'failed', f"Failed to process attachments: {e}")
        log_activity(f"Scheduled email {email_id} failed: {e}", "warning")
        return False
    except Exception as e:
        booking_db.finish_scheduled_email(email_id, 'failed', str(e))
        log_error(f"Scheduled email {email_id} failed: {e}")
        return False

    status = 'sent' if stats['successful'] > 0 else 'failed'
    error = None if stats['failed'] == 0 else f"{stats['failed']} recipient(s) failed"
    booking_db.finish_scheduled_email(email_id, status, error)
    return status == 'sent'


def process_due_scheduled_emails(limit=50):
    """Backstop sweep for scheduled emails whose one-shot job never ran"""
    processed = 0
    for email_id in booking_db.due_scheduled_email_ids(limit):
        send_scheduled_email(email_id)
        processed += 1
    if processed:
        log_activity(f"Processed {processed} overdue scheduled emails at {datetime.now().isoformat()}", "info")
    return processed


def send_transfer_notification(booker_email, booker_name, participant_name, event_title, old_section, new_section, organizer_name):
    subject = f"Participant Transfer Confirmation - {event_title}"
    message = (
        f"Hi {booker_name or 'there'},\n\n"
        f"{participant_name} has been moved from {old_section} to {new_section} for {event_title}.\n\n"
        f"If you have any questions, reply to this email.\n\n{organizer_name}"
    )
    html_content = render_custom_email(subject, message, {"full_name": organizer_name}, {})
    return send_email(booker_email, subject, html_content, to_name=booker_name)


def send_withdrawal_notification(to_email, to_name, participant_name, event, booking_reference,
                                 withdrawn_by, reason, quote, booking_cancelled, remaining, organizer_name):
    """Tell the booker (or the organizer) that a participant left the event"""
    title = event.get('title') or 'the event'
    if booking_cancelled:
        subject = f"Booking Cancelled: {title}"
    elif withdrawn_by == 'organizer':
        subject = f"Participant Withdrawn: {title}"
    else:
        subject = f"Withdrawal Processed: {title}"

    lines = [
        f"Hi {to_name or 'there'},",
        "",
        f"{participant_name} has been withdrawn from {title} "
        f"(booking {booking_reference}) by the {withdrawn_by}.",
    ]
    if reason:
        lines.append(f"Reason: {reason}")
    if quote is not None and quote.amount > 0:
        lines.append(f"Refund due: {quote.amount} ({quote.percentage}%)")
    if booking_cancelled:
        lines.append("No participants remain, so the booking has been cancelled.")
    elif remaining:
        names = ', '.join(f"{p['first_name']} {p['last_name']}" for p in remaining)
        lines.append(f"Still registered: {names}")
    lines += ["", organizer_name]

    html_content = render_custom_email(subject, "\n".join(lines), {"full_name": organizer_name}, {"event": event})
    return send_email(to_email, subject, html_content, to_name=to_name)
