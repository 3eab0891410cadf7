"""
Overdue Sweep Module

Daily job that marks FUNDED loans past their payback date as OVERDUE,
degrades the health of loans that are already overdue, and emails both
parties a reminder.

A failure on one loan is logged and audited and the sweep moves on to the
next. SweepScheduler runs the sweep once a day on a daemon thread.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from .audit import AuditTrail, AuditEventType
from .loans import Loan, LoanManager, LoanStatus
from .lifecycle import LoanLifecycle
from .users import UserManager
from .notifications import EmailMessage, EmailSender
from .payments import format_amount
from .logging_config import get_logger, log_action


REMINDER_POLICIES = ("repeat", "once_per_tier")


class OverdueSweep:
    """
    Marks late loans OVERDUE and sends overdue reminders
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        lifecycle: LoanLifecycle,
        user_manager: UserManager,
        email_sender: EmailSender,
        audit_trail: AuditTrail,
        reminder_policy: str = "repeat"
    ):
        if reminder_policy not in REMINDER_POLICIES:
            raise ValueError(f"Unknown reminder policy: {reminder_policy}")

        self.loan_manager = loan_manager
        self.lifecycle = lifecycle
        self.user_manager = user_manager
        self.email_sender = email_sender
        self.audit_trail = audit_trail
        self.reminder_policy = reminder_policy
        self.logger = get_logger("microlend.sweep")

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Run one sweep over FUNDED and OVERDUE loans

        Args:
            now: Sweep time (defaults to current UTC time)

        Returns:
            Counts of loans scanned, loans marked overdue, reminders sent and errors
        """
        now = now or datetime.now(timezone.utc)
        summary = {
            "loans_scanned": 0,
            "loans_marked_overdue": 0,
            "reminders_sent": 0,
            "errors": 0
        }

        for loan in self.loan_manager.find_loans_by_status(LoanStatus.FUNDED):
            summary["loans_scanned"] += 1
            if loan.payback_date >= now:
                continue
            try:
                if self.lifecycle.mark_overdue(loan.id, now):
                    summary["loans_marked_overdue"] += 1
            except Exception as e:
                self._record_error(loan.id, "mark_overdue", e)
                summary["errors"] += 1

        for loan in self.loan_manager.find_loans_by_status(LoanStatus.OVERDUE):
            summary["loans_scanned"] += 1
            try:
                loan = self.lifecycle.degrade_health(loan.id, now)
                if loan is None:
                    continue
                if self._should_remind(loan):
                    summary["reminders_sent"] += self._send_reminders(loan, now)
                    if self.reminder_policy == "once_per_tier":
                        self.lifecycle.record_reminder(loan.id, loan.health)
            except Exception as e:
                self._record_error(loan.id, "overdue_reminder", e)
                summary["errors"] += 1

        self.audit_trail.log_event(
            event_type=AuditEventType.OVERDUE_SWEEP_COMPLETED,
            entity_type="system",
            entity_id="overdue_sweep",
            metadata={**summary, "run_at": now}
        )
        self.logger.info(
            f"Overdue sweep: scanned {summary['loans_scanned']}, "
            f"marked {summary['loans_marked_overdue']} overdue, "
            f"sent {summary['reminders_sent']} reminders, {summary['errors']} errors"
        )
        return summary

    def _should_remind(self, loan: Loan) -> bool:
        if self.reminder_policy == "repeat":
            return True
        return loan.last_reminder_health != loan.health.value

    def _send_reminders(self, loan: Loan, now: datetime) -> int:
        borrower = self.user_manager.require_user(loan.borrower_id)
        lender = self.user_manager.require_user(loan.lender_id)
        days_late = loan.days_late(now)

        messages = [
            self._reminder(
                to=borrower.email,
                subject=f"Your loan is overdue by {days_late} days",
                greeting=borrower.name,
                intro=f"Your loan from {lender.name} is overdue.",
                loan=loan
            ),
            self._reminder(
                to=lender.email,
                subject=f"Your borrower's loan is overdue by {days_late} days",
                greeting=lender.name,
                intro=f"The loan you gave to {borrower.name} is overdue.",
                loan=loan
            ),
        ]
        return sum(1 for message in messages if self.email_sender.send(message))

    def _reminder(self, to: str, subject: str, greeting: str, intro: str, loan: Loan) -> EmailMessage:
        details = [
            ("Amount", format_amount(loan.total_payable)),
            ("Signed by", loan.signed_by or "N/A"),
            ("Payback date", loan.payback_date.strftime("%Y-%m-%d")),
            ("Loan health", loan.health.value),
        ]
        text = f"Hi {greeting},\n\n{intro}\n\n" + "\n".join(f"{k}: {v}" for k, v in details)
        rows = "".join(f"<li><strong>{k}:</strong> {v}</li>" for k, v in details)
        html = f"<p>Hi {greeting},</p><p>{intro}</p><ul>{rows}</ul>"
        return EmailMessage(to=to, subject=subject, text=text, html=html)

    def _record_error(self, loan_id: str, stage: str, error: Exception) -> None:
        log_action(
            self.logger, "error", f"Overdue sweep failed for loan {loan_id}: {error}",
            action=stage, resource=f"loan:{loan_id}"
        )
        self.audit_trail.log_event(
            event_type=AuditEventType.SYSTEM_ERROR,
            entity_type="loan",
            entity_id=loan_id,
            metadata={"stage": stage, "error": str(error), "error_type": type(error).__name__}
        )


class SweepScheduler:
    """Runs an OverdueSweep once a day at a fixed UTC hour on a daemon thread"""

    def __init__(self, sweep: OverdueSweep, hour_utc: int = 0):
        if not 0 <= hour_utc <= 23:
            raise ValueError("hour_utc must be between 0 and 23")
        self.sweep = sweep
        self.hour_utc = hour_utc
        self.logger = get_logger("microlend.sweep")
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def seconds_until_next_run(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        next_run = now.replace(hour=self.hour_utc, minute=0, second=0, microsecond=0)
        if next_run <= now:
            next_run += timedelta(days=1)
        return (next_run - now).total_seconds()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="overdue-sweep", daemon=True)
        self._thread.start()
        self.logger.info(f"Overdue sweep scheduled daily at {self.hour_utc:02d}:00 UTC")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.seconds_until_next_run()):
            try:
                self.sweep.run_once()
            except Exception:
                self.logger.exception("Overdue sweep run failed")
