import logging
import smtplib
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class Notifier:
    """Result e-mails, sent fire-and-forget after a grade is committed.

    Delivery failures are logged and dropped; they never reach the grading path.
    Without SMTP settings the message is logged instead of sent.
    """

    def __init__(self, config: Dict[str, Any], spawn: Optional[Callable] = None) -> None:
        self.host = config.get('SMTP_HOST')
        self.port = config.get('SMTP_PORT') or 587
        self.user = config.get('SMTP_USER')
        self.password = config.get('SMTP_PASS')
        self.from_email = config.get('SMTP_FROM') or self.user
        self.spawn = spawn

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password and self.from_email)

    def send(self, to_email: str, subject: str, body: str) -> None:
        if not to_email:
            return
        if self.spawn is not None:
            try:
                self.spawn(self._deliver, to_email, subject, body)
            except Exception:
                logger.warning('Could not schedule mail to %s', to_email, exc_info=True)
            return
        self._deliver(to_email, subject, body)

    def _deliver(self, to_email: str, subject: str, body: str) -> None:
        try:
            if not self.configured:
                logger.info('DEV mail for %s: %s | %s', to_email, subject, body)
                return

            msg = MIMEText(body, 'plain', 'utf-8')
            msg['Subject'] = subject
            msg['From'] = self.from_email
            msg['To'] = to_email

            with smtplib.SMTP(self.host, int(self.port)) as server:
                server.starttls()
                server.login(self.user, self.password)
                server.sendmail(self.from_email, [to_email], msg.as_string())
        except Exception:
            logger.warning('Result mail to %s failed', to_email, exc_info=True)

    def assessment_result(self, to_email: str, name: Optional[str], title: str, result: Dict[str, Any]) -> None:
        status = 'passed' if result.get('passed') else 'did not pass'
        body = (
            f"Hello {name or 'Student'},\n\n"
            f"Your assessment \"{title}\" has been graded.\n"
            f"Score: {result.get('score')}/{result.get('total_possible')} "
            f"({result.get('percentage')}%), you {status}.\n"
        )
        self.send(to_email, 'Assessment Results Available', body)

    def mock_exam_result(self, to_email: str, name: Optional[str], title: str, total_score: int, total_questions: int) -> None:
        body = (
            f"Hello {name or 'Student'},\n\n"
            f"Your mock exam \"{title}\" is complete.\n"
            f"Total score: {total_score} across {total_questions} questions.\n"
        )
        self.send(to_email, 'Mock Exam Results Available', body)
