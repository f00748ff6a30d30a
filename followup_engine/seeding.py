# followup_engine/seeding.py
# Seed the default follow-up sequences (idempotent: skips when any exist).
import asyncio
import logging
from typing import Any, Dict, List

from followup_engine.common.tracing import setup_logging
from followup_engine.config import get_settings
from followup_engine.domain.models import SequenceTemplate
from followup_engine.engine.service import FollowUpEngine, build_engine

log = logging.getLogger("followups.seed")

DEFAULT_SEQUENCES: List[Dict[str, Any]] = [
    {
        "backend_name": "new-student-welcome",
        "display_name": "New Student Welcome",
        "subject": "Welcome to French Language Solutions!",
        "steps": [
            {"order": 0, "channel": "email", "delay_minutes": 30,
             "content_template": "Hi {{first_name}}, welcome! Reply to this email with any question about your course."},
            {"order": 1, "channel": "sms", "delay_minutes": 1440,
             "content_template": "Hi {{first_name}}, did you get our welcome email? Happy to help by text too."},
        ],
    },
    {
        "backend_name": "assessment-reminder",
        "display_name": "Assessment Reminder",
        "subject": "Your French Assessment is Coming Up",
        "steps": [
            {"order": 0, "channel": "email", "delay_minutes": 1440,
             "content_template": "Hi {{first_name}}, a reminder that your French assessment is coming up."},
            {"order": 1, "channel": "sms", "delay_minutes": 1440,
             "content_template": "{{first_name}}, just checking you're all set for the assessment. Any questions?"},
        ],
    },
    {
        "backend_name": "re-engagement",
        "display_name": "Re-engagement Campaign",
        "subject": "We Miss You at FLS!",
        "steps": [
            {"order": 0, "channel": "email", "delay_minutes": 10080,
             "content_template": "Hi {{first_name}}, we miss you! Want to pick up where you left off?"},
            {"order": 1, "channel": "whatsapp", "delay_minutes": 4320,
             "content_template": "Hi {{first_name}}, it's the FLS team. Can we help you restart your French?"},
            {"order": 2, "channel": "call", "delay_minutes": 4320,
             "content_template": "Call {{full_name}} at {{phone}} about restarting ({{sequence_name}})."},
        ],
    },
    {
        "backend_name": "payment-follow-up",
        "display_name": "Payment Follow-up",
        "subject": "Complete Your Enrollment",
        "steps": [
            {"order": 0, "channel": "email", "delay_minutes": 60,
             "content_template": "Hi {{first_name}}, your enrollment is almost done. Complete your payment to save your seat."},
            {"order": 1, "channel": "sms", "delay_minutes": 1440,
             "content_template": "Hi {{first_name}}, your seat is still reserved. Any trouble with the payment?"},
        ],
    },
    {
        "backend_name": "course-start-reminder",
        "display_name": "Course Start Reminder",
        "subject": "Your French Course Starts Soon!",
        "steps": [
            {"order": 0, "channel": "email", "delay_minutes": 2880,
             "content_template": "Hi {{first_name}}, your French course starts soon. See you there!"},
        ],
    },
]


async def seed_sequences(engine: FollowUpEngine) -> List[SequenceTemplate]:
    existing = await engine.sequences.list()
    if existing:
        log.info("✅ Sequences already exist (%d found). Skipping seed.", len(existing))
        return []
    created = []
    for data in DEFAULT_SEQUENCES:
        created.append(await engine.sequences.create(**data))
    log.info("✅ Inserted %d follow-up sequences", len(created))
    return created


async def run() -> None:
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    engine = await build_engine(settings)
    try:
        await seed_sequences(engine)
    finally:
        await engine.close()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
