from datetime import timezone
from decimal import Decimal

from sqlalchemy.orm import sessionmaker

from donations.config import Settings
from donations.models import Case, Contribution, User
from donations.services.case_amount_reconciliation import CaseAmountReconciliationEngine


def _engine_for(db_session, **overrides) -> CaseAmountReconciliationEngine:
    factory = sessionmaker(bind=db_session.get_bind(), autoflush=False, future=True)
    settings = Settings(**overrides)
    return CaseAmountReconciliationEngine(session_factory=factory, settings_provider=lambda: settings)


def test_run_once_corrects_drifted_cases(db_session):
    donor = User(email="donor@example.org")
    case = Case(title_en="Medical bills", current_amount=Decimal("500"))
    db_session.add_all([donor, case])
    db_session.flush()
    db_session.add(Contribution(amount=Decimal("120"), status="approved", donor_id=donor.id, case_id=case.id))
    db_session.commit()

    report = _engine_for(db_session).run_once()

    assert report is not None
    assert report.cases_corrected == 1
    db_session.expire_all()
    assert db_session.get(Case, case.id).current_amount == Decimal("120")


def test_build_trigger_uses_configured_timezone(db_session):
    engine = _engine_for(db_session)

    trigger = engine._build_trigger("0 3 * * *", "Africa/Cairo")

    assert str(trigger.timezone) == "Africa/Cairo"


def test_build_trigger_falls_back_to_utc(db_session, caplog):
    engine = _engine_for(db_session)

    with caplog.at_level("WARNING"):
        trigger = engine._build_trigger("0 3 * * *", "Mars/Olympus_Mons")

    assert trigger.timezone == timezone.utc
    assert "defaulting to UTC" in caplog.text


def test_shutdown_without_start_is_noop(db_session):
    engine = _engine_for(db_session)

    engine.shutdown()

    assert engine.running is False
