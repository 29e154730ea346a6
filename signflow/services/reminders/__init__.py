from signflow.services.reminders.manual import send_reminders
from signflow.services.reminders.scheduler import run_reminder_cycle

__all__ = ["run_reminder_cycle", "send_reminders"]
