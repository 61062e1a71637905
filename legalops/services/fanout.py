"""
Recipient fan-out: resolve a run's audience, issue one tracked participation
record per person and send the survey invitations.
"""
from datetime import datetime
from typing import Iterable, Optional

from legalops.exceptions import DispatchError
from legalops.models.compliance_run import ComplianceRun, ComplianceRecipient
from legalops.services.identity import IdentityResolver, PersonRef
from legalops.services.notifier import Notifier, TemplateKind, survey_link
from legalops.services.store import ObligationStore
from legalops.services.tokens import TokenIssuer
from legalops.utils.logger import get_logger, mask_token

logger = get_logger(__name__)


async def deliver(notifier: Notifier, email: str, kind: TemplateKind, payload: dict) -> None:
    """Send through the notifier, turning any failure into DispatchError"""
    try:
        accepted = await notifier.send(email, kind, payload)
    except Exception as e:
        raise DispatchError(f"Notifier error for {email}: {e}") from e
    if not accepted:
        raise DispatchError(f"Notifier rejected message for {email}")


class RecipientFanoutEngine:

    def __init__(
        self,
        store: ObligationStore,
        identity: IdentityResolver,
        notifier: Notifier,
        base_url: Optional[str] = None,
    ):
        self.store = store
        self.identity = identity
        self.notifier = notifier
        self.base_url = base_url

    async def resolve_audience(self, run: ComplianceRun, dedupe: bool = False) -> list[PersonRef]:
        """
        One PersonRef per department head of each target department.

        A person heading several target departments appears once per
        department unless `dedupe` is set.
        """
        audience: list[PersonRef] = []
        seen: set[int] = set()
        for department_id in await self.store.get_run_department_ids(run.id):
            for person in await self.identity.department_heads(department_id):
                if dedupe and person.user_id in seen:
                    continue
                seen.add(person.user_id)
                audience.append(person)
        return audience

    async def issue_recipients(
        self,
        run: ComplianceRun,
        audience: Iterable[PersonRef],
    ) -> list[ComplianceRecipient]:
        """Create a Recipient with a fresh token per person; caller owns the transaction"""
        issuer = TokenIssuer(self.store)
        recipients = []
        for person in audience:
            recipient = ComplianceRecipient(
                run_id=run.id,
                user_id=person.user_id,
                department_id=person.department_id,
                email=person.email,
                name=person.display_name,
                department_name=person.department_name,
                token=await issuer.issue(),
                email_sent=False,
                survey_completed=False,
            )
            self.store.add(recipient)
            recipients.append(recipient)
        await self.store.flush()
        logger.info(f"Issued {len(recipients)} recipients for run {run.id}")
        return recipients

    async def dispatch_invitations(
        self,
        run: ComplianceRun,
        recipients: Iterable[ComplianceRecipient],
    ) -> dict:
        """
        Best-effort invitation delivery. Each successful send is committed on
        its own; a failure is logged and leaves email_sent false so a manual
        re-activation can retry it.
        """
        owner = await self.store.get_user(run.created_by)
        stats = {"attempted": 0, "sent": 0, "failed": 0}

        for recipient in recipients:
            if recipient.email_sent:
                continue
            stats["attempted"] += 1
            payload = {
                "run_id": run.id,
                "title": run.title,
                "description": run.description,
                "due_date": run.due_date.isoformat(),
                "recipient_name": recipient.name,
                "department_name": recipient.department_name,
                "created_by_name": owner.full_name if owner else None,
                "link": survey_link(recipient.token, self.base_url),
            }
            try:
                await deliver(self.notifier, recipient.email, TemplateKind.SURVEY_INVITATION, payload)
            except DispatchError as e:
                stats["failed"] += 1
                logger.warning(
                    f"Invitation for run {run.id} to {recipient.email} "
                    f"(token {mask_token(recipient.token)}) failed: {e}"
                )
                continue

            recipient.email_sent = True
            recipient.email_sent_at = datetime.utcnow()
            await self.store.commit()
            stats["sent"] += 1

        logger.info(
            f"Run {run.id} invitations: {stats['sent']} sent, {stats['failed']} failed"
        )
        return stats
