"""
Compliance run lifecycle: creation, activation fan-out, transitions and recurrence
"""
from datetime import date

import pytest
from sqlalchemy import select, func

from legalops.exceptions import (
    InvalidTransitionError, NoAudienceError, NotFoundError, TokenExhaustedError, ValidationError,
)
from legalops.models.compliance_run import (
    ComplianceRun, ComplianceRecipient, ComplianceQuestion, RunStatus, QuestionType,
)
from legalops.services.notifier import TemplateKind
from legalops.services.tokens import TokenIssuer


async def _count(db_session, model, *conditions):
    result = await db_session.execute(select(func.count(model.id)).where(*conditions))
    return result.scalar()


async def _status(db_session, run_id):
    result = await db_session.execute(select(ComplianceRun.status).where(ComplianceRun.id == run_id))
    return result.scalar_one()


def _fail_token_call(monkeypatch, call_number, error):
    """Make the n-th token issued from now on raise `error`"""
    original = TokenIssuer.issue
    calls = {"count": 0}

    async def flaky(self):
        calls["count"] += 1
        if calls["count"] == call_number:
            raise error
        return await original(self)

    monkeypatch.setattr(TokenIssuer, "issue", flaky)


# ===================== CREATE =====================


class TestCreateRun:

    @pytest.mark.asyncio
    async def test_create_draft_with_ordered_questions(self, compliance, run_payload, db_session):
        run = await compliance.runs.create_run(**run_payload)
        assert run.status == RunStatus.DRAFT
        assert run.is_recurring is False
        assert run.next_run_date is None

        questions = await compliance.store.get_questions(run.id)
        assert [q.position for q in questions] == [1, 2, 3, 4]
        assert questions[0].question_type == QuestionType.YES_NO
        assert questions[1].max_score == 5
        assert questions[2].options == ["Monthly", "Quarterly", "Never"]
        assert questions[3].is_required is False

        assert await compliance.store.get_run_department_ids(run.id) == run_payload["department_ids"]

    @pytest.mark.asyncio
    async def test_recurring_flag_follows_frequency(self, compliance, run_payload):
        run_payload["frequency"] = "monthly"
        run = await compliance.runs.create_run(**run_payload)
        assert run.is_recurring is True

    @pytest.mark.asyncio
    async def test_missing_title_rejected(self, compliance, run_payload, db_session):
        run_payload["title"] = "  "
        with pytest.raises(ValidationError):
            await compliance.runs.create_run(**run_payload)
        assert await _count(db_session, ComplianceRun) == 0

    @pytest.mark.asyncio
    async def test_unknown_frequency_rejected(self, compliance, run_payload):
        run_payload["frequency"] = "hourly"
        with pytest.raises(ValidationError, match="frequency"):
            await compliance.runs.create_run(**run_payload)

    @pytest.mark.asyncio
    async def test_questions_must_be_a_list(self, compliance, run_payload):
        run_payload["questions"] = {"question_text": "Not a list"}
        with pytest.raises(ValidationError):
            await compliance.runs.create_run(**run_payload)

    @pytest.mark.asyncio
    async def test_multiple_choice_needs_options(self, compliance, run_payload):
        run_payload["questions"] = [{"question_text": "Pick one", "question_type": "multiple"}]
        with pytest.raises(ValidationError, match="options"):
            await compliance.runs.create_run(**run_payload)

    @pytest.mark.asyncio
    async def test_score_needs_max_score(self, compliance, run_payload):
        run_payload["questions"] = [{"question_text": "Rate", "question_type": "score", "max_score": "lots"}]
        with pytest.raises(ValidationError, match="max_score"):
            await compliance.runs.create_run(**run_payload)

    @pytest.mark.asyncio
    async def test_due_before_start_rejected(self, compliance, run_payload):
        run_payload["due_date"] = date(2023, 12, 1)
        with pytest.raises(ValidationError):
            await compliance.runs.create_run(**run_payload)

    @pytest.mark.asyncio
    async def test_unknown_department(self, compliance, run_payload):
        run_payload["department_ids"] = [9999]
        with pytest.raises(NotFoundError):
            await compliance.runs.create_run(**run_payload)

    @pytest.mark.asyncio
    async def test_unknown_owner(self, compliance, run_payload):
        run_payload["created_by"] = 9999
        with pytest.raises(NotFoundError):
            await compliance.runs.create_run(**run_payload)


# ===================== ACTIVATE =====================


class TestActivateRun:

    @pytest.mark.asyncio
    async def test_activation_fans_out_to_department_heads(self, compliance, run_payload, notifier, seed_data):
        run = await compliance.runs.create_run(**run_payload)
        result = await compliance.runs.activate_run(run.id)

        assert result.run.status == RunStatus.ACTIVE
        assert len(result.recipients) == 2
        assert {r.user_id for r in result.recipients} == {seed_data["finance_head_id"], seed_data["ops_head_id"]}
        assert {r.department_name for r in result.recipients} == {"Finance", "Operations"}

        tokens = [r.token for r in result.recipients]
        assert len(set(tokens)) == 2
        assert all(len(t) >= 22 for t in tokens)

        assert len(notifier.attempts) == 2
        assert all(kind == TemplateKind.SURVEY_INVITATION for _, kind, _ in notifier.attempts)
        links = {payload["link"] for _, _, payload in notifier.sent}
        assert links == {f"https://app.test/compliance-survey/{t}" for t in tokens}
        assert all(r.email_sent for r in result.recipients)
        assert result.invitations == {"attempted": 2, "sent": 2, "failed": 0}

    @pytest.mark.asyncio
    async def test_no_audience_leaves_run_in_draft(self, compliance, run_payload, db_session, seed_data, notifier):
        run_payload["department_ids"] = [seed_data["marketing_id"]]
        run = await compliance.runs.create_run(**run_payload)
        run_id = run.id

        with pytest.raises(NoAudienceError):
            await compliance.runs.activate_run(run_id)

        assert await _status(db_session, run_id) == RunStatus.DRAFT
        assert await _count(db_session, ComplianceRecipient, ComplianceRecipient.run_id == run_id) == 0
        assert notifier.attempts == []

    @pytest.mark.asyncio
    async def test_dispatch_failure_does_not_undo_activation(self, compliance, run_payload, notifier, db_session):
        notifier.explode.add("ops.head@acme.test")
        run = await compliance.runs.create_run(**run_payload)
        result = await compliance.runs.activate_run(run.id)

        assert result.invitations == {"attempted": 2, "sent": 1, "failed": 1}
        assert await _status(db_session, run.id) == RunStatus.ACTIVE
        assert await _count(db_session, ComplianceRecipient, ComplianceRecipient.run_id == run.id) == 2
        unsent = [r for r in result.recipients if not r.email_sent]
        assert [r.email for r in unsent] == ["ops.head@acme.test"]

    @pytest.mark.asyncio
    async def test_reactivation_retries_only_unsent(self, compliance, run_payload, notifier):
        notifier.reject.add("ops.head@acme.test")
        run = await compliance.runs.create_run(**run_payload)
        await compliance.runs.activate_run(run.id)

        notifier.reject.clear()
        notifier.attempts.clear()
        retry = await compliance.runs.activate_run(run.id)

        assert [email for email, _, _ in notifier.attempts] == ["ops.head@acme.test"]
        assert retry.invitations["sent"] == 1
        assert len(retry.recipients) == 2

    @pytest.mark.asyncio
    async def test_activating_expired_run_rejected(self, compliance, run_payload):
        run = await compliance.runs.create_run(**run_payload)
        run_id = run.id
        await compliance.runs.activate_run(run_id)
        await compliance.runs.expire_run(run_id)
        with pytest.raises(InvalidTransitionError):
            await compliance.runs.activate_run(run_id)

    @pytest.mark.asyncio
    async def test_recurring_activation_schedules_next_run(self, compliance, run_payload):
        run_payload.update(frequency="quarterly", start_date=date(2024, 1, 10), due_date=date(2024, 1, 10), anchor_day=10)
        run = await compliance.runs.create_run(**run_payload)
        result = await compliance.runs.activate_run(run.id)
        assert result.run.next_run_date == date(2024, 4, 10)


# ===================== TRANSITIONS =====================


class TestTransitions:

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, compliance, run_payload):
        run_payload.update(frequency="monthly", anchor_day=1)
        run = await compliance.runs.create_run(**run_payload)
        await compliance.runs.activate_run(run.id)

        paused = await compliance.runs.pause_run(run.id)
        assert paused.status == RunStatus.PAUSED
        assert paused.next_run_date is None

        resumed = await compliance.runs.resume_run(run.id, today=date(2024, 5, 20))
        assert resumed.status == RunStatus.ACTIVE
        assert resumed.next_run_date == date(2024, 6, 1)

    @pytest.mark.asyncio
    async def test_cannot_pause_draft(self, compliance, run_payload, db_session):
        run = await compliance.runs.create_run(**run_payload)
        run_id = run.id
        with pytest.raises(InvalidTransitionError):
            await compliance.runs.pause_run(run_id)
        assert await _status(db_session, run_id) == RunStatus.DRAFT

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, compliance, run_payload):
        run = await compliance.runs.create_run(**run_payload)
        await compliance.runs.activate_run(run.id)
        with pytest.raises(InvalidTransitionError):
            await compliance.runs.resume_run(run.id)

    @pytest.mark.asyncio
    async def test_expire_overdue_single_runs_only(self, compliance, run_payload, db_session):
        single = await compliance.runs.create_run(**run_payload)
        await compliance.runs.activate_run(single.id)

        run_payload.update(title="Monthly attestation", frequency="monthly")
        recurring = await compliance.runs.create_run(**run_payload)
        await compliance.runs.activate_run(recurring.id)

        assert await compliance.runs.expire_overdue_runs(today=date(2024, 1, 31)) == 0
        assert await compliance.runs.expire_overdue_runs(today=date(2024, 2, 1)) == 1
        assert await _status(db_session, single.id) == RunStatus.EXPIRED
        assert await _status(db_session, recurring.id) == RunStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_missing_run(self, compliance, seed_data):
        with pytest.raises(NotFoundError):
            await compliance.runs.activate_run(4242)


# ===================== RECURRENCE =====================


class TestRecurrence:

    @pytest.mark.asyncio
    async def test_recur_clones_run_and_advances_parent(self, compliance, run_payload, notifier, db_session):
        run_payload.update(
            frequency="monthly", start_date=date(2024, 1, 1), due_date=date(2024, 1, 15), anchor_day=1,
        )
        parent = await compliance.runs.create_run(**run_payload)
        activated = await compliance.runs.activate_run(parent.id)
        parent_tokens = {r.token for r in activated.recipients}
        notifier.attempts.clear()

        clone = await compliance.runs.recur(parent, today=date(2024, 2, 1))

        assert clone.parent_run_id == parent.id
        assert clone.title == f"{parent.title} - 2024-02-01"
        assert clone.status == RunStatus.ACTIVE
        assert clone.is_recurring is False
        assert clone.start_date == date(2024, 2, 1)
        assert clone.due_date == date(2024, 3, 1)

        assert parent.last_run_date == date(2024, 2, 1)
        assert parent.next_run_date == date(2024, 3, 1)
        assert parent.status == RunStatus.ACTIVE

        parent_questions = await compliance.store.get_questions(parent.id)
        clone_questions = await compliance.store.get_questions(clone.id)
        assert [(q.position, q.question_text) for q in clone_questions] == [
            (q.position, q.question_text) for q in parent_questions
        ]
        assert await compliance.store.get_run_department_ids(clone.id) == run_payload["department_ids"]

        clone_recipients = await compliance.store.get_recipients(clone.id)
        assert len(clone_recipients) == 2
        assert not parent_tokens & {r.token for r in clone_recipients}
        assert all(not r.survey_completed for r in clone_recipients)
        assert len(notifier.attempts) == 2

    @pytest.mark.asyncio
    async def test_quarterly_recur_on_anchor_day(self, compliance, run_payload, db_session):
        run_payload.update(
            frequency="quarterly", start_date=date(2024, 1, 10), due_date=date(2024, 1, 10), anchor_day=10,
        )
        parent = await compliance.runs.create_run(**run_payload)
        await compliance.runs.activate_run(parent.id)

        clone = await compliance.runs.recur(parent, today=date(2024, 1, 10))

        assert parent.next_run_date == date(2024, 4, 10)
        assert clone.is_recurring is False
        assert await _count(db_session, ComplianceRun, ComplianceRun.parent_run_id == parent.id) == 1
        clone_texts = [q.question_text for q in await compliance.store.get_questions(clone.id)]
        assert clone_texts == [q["question_text"] for q in run_payload["questions"]]

    @pytest.mark.asyncio
    async def test_recur_rejects_single_runs(self, compliance, run_payload):
        run = await compliance.runs.create_run(**run_payload)
        await compliance.runs.activate_run(run.id)
        with pytest.raises(ValidationError):
            await compliance.runs.recur(run, today=date(2024, 1, 20))

    @pytest.mark.asyncio
    async def test_process_due_recurrences(self, compliance, run_payload, db_session):
        run_payload.update(frequency="weekly", start_date=date(2024, 1, 1), due_date=date(2024, 1, 1), anchor_day=1)
        weekly = await compliance.runs.create_run(**run_payload)
        await compliance.runs.activate_run(weekly.id)
        assert weekly.next_run_date == date(2024, 1, 8)

        not_yet = await compliance.runs.process_due_recurrences(today=date(2024, 1, 7))
        assert not_yet == {"due": 0, "recurred": 0, "failed": 0}

        stats = await compliance.runs.process_due_recurrences(today=date(2024, 1, 8))
        assert stats == {"due": 1, "recurred": 1, "failed": 0}

        clones = await _count(db_session, ComplianceRun, ComplianceRun.parent_run_id == weekly.id)
        assert clones == 1
        assert await _status(db_session, weekly.id) == RunStatus.ACTIVE

        again = await compliance.runs.process_due_recurrences(today=date(2024, 1, 8))
        assert again["due"] == 0

    @pytest.mark.asyncio
    async def test_failed_recur_leaves_no_clone_and_parent_unchanged(
        self, compliance, run_payload, db_session, monkeypatch,
    ):
        run_payload.update(
            frequency="monthly", start_date=date(2024, 1, 1), due_date=date(2024, 1, 15), anchor_day=1,
        )
        parent = await compliance.runs.create_run(**run_payload)
        await compliance.runs.activate_run(parent.id)
        parent_id = parent.id
        _fail_token_call(monkeypatch, 2, TokenExhaustedError("token space exhausted"))

        with pytest.raises(TokenExhaustedError):
            await compliance.runs.recur(parent, today=date(2024, 2, 1))

        assert await _count(db_session, ComplianceRun, ComplianceRun.parent_run_id == parent_id) == 0
        assert await _count(db_session, ComplianceRun) == 1
        assert await _count(db_session, ComplianceRecipient) == 2
        schedule = await db_session.execute(
            select(ComplianceRun.last_run_date, ComplianceRun.next_run_date).where(ComplianceRun.id == parent_id)
        )
        assert schedule.one() == (None, date(2024, 2, 1))

    @pytest.mark.asyncio
    async def test_one_failing_run_does_not_stop_the_batch(self, compliance, run_payload, db_session, monkeypatch):
        run_payload.update(frequency="weekly", start_date=date(2024, 1, 1), due_date=date(2024, 1, 1), anchor_day=1)
        ids = []
        for title in ("Weekly access review", "Weekly vendor review"):
            run = await compliance.runs.create_run(**dict(run_payload, title=title))
            await compliance.runs.activate_run(run.id)
            ids.append(run.id)
        _fail_token_call(monkeypatch, 1, RuntimeError("token store unavailable"))

        stats = await compliance.runs.process_due_recurrences(today=date(2024, 1, 8))

        assert stats == {"due": 2, "recurred": 1, "failed": 1}
        assert await _count(db_session, ComplianceRun, ComplianceRun.parent_run_id.in_(ids)) == 1

    @pytest.mark.asyncio
    async def test_paused_runs_do_not_recur(self, compliance, run_payload):
        run_payload.update(frequency="weekly", anchor_day=1)
        run = await compliance.runs.create_run(**run_payload)
        await compliance.runs.activate_run(run.id)
        await compliance.runs.pause_run(run.id)

        stats = await compliance.runs.process_due_recurrences(today=date(2024, 6, 1))
        assert stats["due"] == 0


# ===================== QUERIES =====================


async def test_list_runs_and_details(compliance, run_payload):
    run = await compliance.runs.create_run(**run_payload)
    activated = await compliance.runs.activate_run(run.id)
    token = activated.recipients[0].token
    questions = await compliance.store.get_questions(run.id)

    await compliance.confirmations.submit_survey(token, [
        {"question_id": questions[0].id, "answer": "yes"},
        {"question_id": questions[1].id, "score": 4},
        {"question_id": questions[2].id, "answer": "Quarterly"},
    ])

    rows = await compliance.runs.list_runs()
    assert len(rows) == 1
    assert rows[0]["total_recipients"] == 2
    assert rows[0]["completed_surveys"] == 1

    details = await compliance.runs.get_run_details(run.id)
    assert details["statistics"] == {
        "total_recipients": 2,
        "completed_surveys": 1,
        "pending_surveys": 1,
        "completion_rate": 50.0,
    }
    assert len(details["questions"]) == 4
    assert await compliance.store.count_responses(activated.recipients[0].id) == 3


async def test_question_positions_unique_per_run(compliance, run_payload, db_session):
    run = await compliance.runs.create_run(**run_payload)
    result = await db_session.execute(
        select(ComplianceQuestion.position).where(ComplianceQuestion.run_id == run.id)
    )
    positions = list(result.scalars().all())
    assert len(positions) == len(set(positions))


async def test_token_issuer_gives_up_after_max_attempts(compliance, monkeypatch):
    issuer = TokenIssuer(compliance.store, max_attempts=3)
    first = await issuer.issue()
    monkeypatch.setattr("legalops.services.tokens.generate_token", lambda nbytes=None: first)

    with pytest.raises(TokenExhaustedError, match="3 attempts"):
        await issuer.issue()
