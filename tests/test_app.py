from datetime import date, timedelta
from types import SimpleNamespace

import pytest

import app as app_module
from app import (
    ActivityLog,
    ChangeRequest,
    HourPack,
    Invoice,
    Lead,
    MaintenanceLog,
    MaintenancePlan,
    Organization,
    OrganizationMember,
    Payment,
    Project,
    RolloverHours,
    StripeConfig,
    StripeWebhookEvent,
    Task,
    UsageNotification,
    User,
    WorkflowError,
    BillingError,
    add_months,
    calculate_lead_score,
    calculate_monthly_cost,
    calculate_total_hours,
    calculate_upgrade_savings,
    can_submit_change_request,
    check_and_send_usage_warnings,
    close_billing_period,
    convert_lead_to_project,
    create_invoice,
    create_task_from_change_request,
    db,
    deduct_hours,
    expire_hour_packs,
    format_hours,
    format_price,
    get_dashboard_overview_snapshot,
    get_hours_balance,
    get_recommended_tier,
    get_score_label,
    has_unlimited_hours,
    has_unlimited_subscriptions,
    mark_invoice_paid,
    mark_overdue_invoices,
    next_invoice_number,
    parse_invoice_items,
    process_monthly_rollover,
    record_hour_pack_purchase,
    create_app,
    utcnow,
)


class StripeStub:
    class Customer:
        created: list[dict] = []

        @classmethod
        def create(cls, **kwargs):
            cls.created.append(kwargs)
            return SimpleNamespace(id="cus_test")

    class Invoice:
        created: list[dict] = []

        @classmethod
        def create(cls, **kwargs):
            cls.created.append(kwargs)
            return SimpleNamespace(id=f"in_{len(cls.created)}")

        @staticmethod
        def finalize_invoice(invoice_id):
            return SimpleNamespace(
                id=invoice_id,
                hosted_invoice_url=f"https://invoice.stripe.test/{invoice_id}",
            )

    class InvoiceItem:
        created: list[dict] = []

        @classmethod
        def create(cls, **kwargs):
            cls.created.append(kwargs)
            return SimpleNamespace(id=f"ii_{len(cls.created)}")

    class checkout:
        class Session:
            created: list[dict] = []
            retrieve_map: dict[str, SimpleNamespace] = {}

            @classmethod
            def create(cls, **kwargs):
                cls.created.append(kwargs)
                session_id = f"cs_test_{len(cls.created)}"
                return SimpleNamespace(
                    id=session_id,
                    url=f"https://checkout.stripe.test/{session_id}",
                    metadata=kwargs.get("metadata", {}),
                )

            @classmethod
            def retrieve(cls, session_id):
                return cls.retrieve_map[session_id]

    class Subscription:
        modified: list[tuple[str, dict]] = []
        retrieve_map: dict[str, object] = {}

        @classmethod
        def retrieve(cls, subscription_id):
            return cls.retrieve_map[subscription_id]

        @classmethod
        def modify(cls, subscription_id, **kwargs):
            cls.modified.append((subscription_id, kwargs))
            return SimpleNamespace(id=subscription_id)

    class billing_portal:
        class Session:
            @staticmethod
            def create(**kwargs):
                return SimpleNamespace(url="https://billing.stripe.test/session")

    class Event:
        next_event = None

        @classmethod
        def construct_from(cls, payload, api_key):
            return cls.next_event

    class Webhook:
        @staticmethod
        def construct_event(payload, sig_header, secret):
            if sig_header != "valid-signature":
                raise ValueError("Invalid signature")
            return StripeStub.Event.next_event

    api_key = None

    @staticmethod
    def reset():
        StripeStub.Customer.created = []
        StripeStub.Invoice.created = []
        StripeStub.InvoiceItem.created = []
        StripeStub.checkout.Session.created = []
        StripeStub.checkout.Session.retrieve_map = {}
        StripeStub.Subscription.modified = []
        StripeStub.Subscription.retrieve_map = {}
        StripeStub.Event.next_event = None


class StubStripeError(Exception):
    pass


def install_stripe_stub(flask_app, monkeypatch, stub=None):
    stub = stub or StripeStub()
    stub.reset()
    monkeypatch.setattr(app_module, "stripe", stub, raising=False)
    monkeypatch.setattr(app_module, "StripeError", StubStripeError, raising=False)
    monkeypatch.setattr(app_module, "SignatureVerificationError", StubStripeError, raising=False)
    flask_app.config["STRIPE_SECRET_KEY"] = "sk_test"
    flask_app.config["STRIPE_PUBLISHABLE_KEY"] = "pk_test"
    return stub


TEST_ADMIN_EMAIL = "ceo@example.com"
TEST_ADMIN_PASSWORD = "SecurePass123!"
CLIENT_PASSWORD = "ClientPass123!"


@pytest.fixture
def sent_emails():
    return []


@pytest.fixture
def app(tmp_path, sent_emails):
    test_db_path = tmp_path / "test.db"

    def _collect(recipient, subject, body):
        sent_emails.append({"to": recipient, "subject": subject, "body": body})
        return True

    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{test_db_path}",
            "ADMIN_EMAIL": TEST_ADMIN_EMAIL,
            "ADMIN_PASSWORD": TEST_ADMIN_PASSWORD,
            "ADMIN_NAME": "Sean CEO",
            "CONTACT_EMAIL": "team@example.com",
            "SITE_URL": "https://agency.example.com",
            "STRIPE_SECRET_KEY": None,
            "STRIPE_WEBHOOK_SECRET": None,
            "STRIPE_WEBHOOK_ALLOW_UNSIGNED": True,
            "DASHBOARD_OVERVIEW_CACHE_SECONDS": 0,
            "NOTIFICATION_EMAIL_SENDER": _collect,
            "STRIPE_PRICE_ESSENTIALS": "price_essentials",
            "STRIPE_PRICE_DIRECTOR": "price_director",
            "STRIPE_PRICE_COO": "price_coo",
        }
    )

    yield app

    with app.app_context():
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


def login_admin(client, follow_redirects: bool = True):
    return client.post(
        "/login",
        data={"email": TEST_ADMIN_EMAIL, "password": TEST_ADMIN_PASSWORD},
        follow_redirects=follow_redirects,
    )


def login_portal(client, email: str, password: str = CLIENT_PASSWORD):
    return client.post(
        "/portal/login",
        data={"email": email, "password": password},
        follow_redirects=False,
    )


def create_staff_member(app, email="dev@example.com", role="BACKEND", password="DevPass123!"):
    with app.app_context():
        user = User(name="Dana Dev", email=email, role=role)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user.id


def create_client_project(
    app,
    tier="ESSENTIALS",
    plan_status="ACTIVE",
    email="owner@helpinghands.org",
    with_plan=True,
):
    """Create an organisation with an owner, a project and optionally a plan."""

    with app.app_context():
        owner = User(name="Olivia Owner", email=email, role="CLIENT")
        owner.set_password(CLIENT_PASSWORD)
        organization = Organization(
            name="Helping Hands", slug=f"helping-hands-{email.split('@')[0]}", email=email
        )
        db.session.add_all([owner, organization])
        db.session.add(
            OrganizationMember(organization=organization, user=owner, role="OWNER")
        )
        project = Project(
            name="Helping Hands Website",
            organization=organization,
            status="MAINTENANCE",
        )
        db.session.add(project)
        plan_id = None
        if with_plan:
            plan = MaintenancePlan(project=project, tier=tier, status=plan_status)
            app_module.apply_tier_to_plan(plan, tier, "MONTHLY")
            plan.current_period_start = utcnow() - timedelta(days=5)
            plan.current_period_end = utcnow() + timedelta(days=25)
            db.session.add(plan)
        db.session.commit()
        if with_plan:
            plan_id = project.maintenance_plan.id
        return {
            "user_id": owner.id,
            "organization_id": organization.id,
            "project_id": project.id,
            "plan_id": plan_id,
            "email": email,
        }


def send_webhook(client, stub, event_type, data_object, event_id="evt_test"):
    stub.Event.next_event = SimpleNamespace(
        id=event_id, type=event_type, data=SimpleNamespace(object=data_object)
    )
    return client.post(
        "/stripe/webhook",
        data="{}",
        headers={"Content-Type": "application/json"},
    )


def test_index_page_renders(client):
    response = client.get("/")
    assert response.status_code == 200
    assert b"Nonprofit Essentials" in response.data
    assert b"Digital COO System" in response.data


def test_services_page_lists_tiers_and_hour_packs(client):
    response = client.get("/services")
    assert response.status_code == 200
    assert b"Digital Director Platform" in response.data
    assert b"Never Expire Pack" in response.data
    assert b"Unlimited" in response.data


def test_services_json_exposes_catalog(client):
    response = client.get("/services", headers={"Accept": "application/json"})
    assert response.status_code == 200
    payload = response.get_json()
    assert [tier["id"] for tier in payload["tiers"]] == ["ESSENTIALS", "DIRECTOR", "COO"]
    assert payload["hourly_rate"] == 7500
    assert payload["urgency_fees"]["EMERGENCY"]["fee"] == 10000


def test_tier_catalog_helpers():
    assert has_unlimited_hours("COO") is True
    assert has_unlimited_hours("ESSENTIALS") is False
    assert has_unlimited_hours("unknown") is False
    assert has_unlimited_subscriptions("coo") is True

    assert calculate_monthly_cost("ESSENTIALS", 2) == 50000
    assert calculate_monthly_cost("ESSENTIALS", 4) == 90000
    assert calculate_monthly_cost("COO", 20) == 200000
    assert calculate_monthly_cost("missing", 1) == 0

    assert calculate_total_hours("ESSENTIALS", 3) == 10
    assert calculate_total_hours("DIRECTOR", 5) == 22
    assert calculate_total_hours("COO", 0) == -1


def test_formatting_helpers():
    assert format_price(50000) == "$500"
    assert format_price(1250000) == "$12,500"
    assert format_hours(-1) == "Unlimited"
    assert format_hours(0) == "0 hours"
    assert format_hours(1) == "1 hour"
    assert format_hours(2.5) == "2.5 hours"
    assert format_hours(8.0) == "8 hours"


def test_tier_recommendation_and_upgrade_savings():
    assert get_recommended_tier(2, 1) == "ESSENTIALS"
    assert get_recommended_tier(5, 1) == "DIRECTOR"
    assert get_recommended_tier(1, 4) == "DIRECTOR"
    assert get_recommended_tier(12, 0) == "COO"

    savings = calculate_upgrade_savings("ESSENTIALS", 4, 0)
    assert savings == {"recommended_tier": "DIRECTOR", "monthly_savings": 5000}
    assert calculate_upgrade_savings("ESSENTIALS", 0, 0) is None
    assert calculate_upgrade_savings("COO", 10, 0) is None


def test_add_months_clamps_to_month_end():
    start = utcnow().replace(year=2024, month=1, day=31)
    assert add_months(start, 1).day == 29
    assert add_months(start, 1).month == 2
    assert add_months(start.replace(month=11, day=30), 3).year == 2025


def test_lead_score_rewards_priority_local_prospects():
    lead = Lead(
        name="Rita",
        email="rita@example.org",
        has_website=False,
        annual_revenue=750_000,
        category="Mental Health",
        city="Louisville",
        state="KY",
        employee_count=25,
        emails_sent=0,
    )
    assert calculate_lead_score(lead) == 30 + 20 + 20 + 15 + 7 + 5
    assert get_score_label(97) == "Hot Lead"


def test_lead_score_penalises_contacted_and_zeroes_converted():
    lead = Lead(
        name="Sam",
        email="sam@example.org",
        has_website=True,
        website_quality="EXCELLENT",
        state="CA",
        emails_sent=3,
    )
    assert calculate_lead_score(lead) == 0 + 12 + 10 + 3 + 5 + 5 - 10

    lead.converted_at = utcnow()
    assert calculate_lead_score(lead) == 0
    assert get_score_label(0) == "Cold Lead"
    assert get_score_label(45) == "Cool Lead"
    assert get_score_label(72) == "Good Lead"


def test_contact_form_creates_scored_lead_and_notifies(app, client, sent_emails):
    response = client.post(
        "/contact",
        data={
            "name": "Pat Example",
            "email": "PAT@example.org",
            "company": "Food Bank of Louisville",
            "category": "Food Security",
            "city": "Louisville",
            "state": "ky",
            "message": "We need a new donation page.",
        },
        headers={"Accept": "application/json"},
    )
    assert response.status_code == 201

    with app.app_context():
        lead = Lead.query.one()
        assert lead.email == "pat@example.org"
        assert lead.status == "NEW"
        assert lead.state == "KY"
        assert lead.lead_score > 0
        assert ActivityLog.query.filter_by(type="LEAD_CREATED").count() == 1

    assert sent_emails[-1]["to"] == "team@example.com"
    assert "Pat Example" in sent_emails[-1]["subject"]


def test_contact_form_requires_email(client):
    response = client.post(
        "/contact",
        data={"name": "No Email"},
        headers={"Accept": "application/json"},
    )
    assert response.status_code == 400
    assert "valid email" in response.get_json()["error"]


def test_default_admin_can_log_in(client):
    response = login_admin(client)
    assert response.status_code == 200
    assert b"Dashboard" in response.data


def test_admin_routes_require_login(client):
    response = client.get("/dashboard", follow_redirects=False)
    assert response.status_code == 302
    assert "/login" in response.headers["Location"]

    response = client.get("/admin/leads", headers={"Accept": "application/json"})
    assert response.status_code == 401


def test_role_restricted_route_rejects_team_member(app, client):
    create_staff_member(app, email="writer@example.com", role="OUTREACH")
    client.post("/login", data={"email": "writer@example.com", "password": "DevPass123!"})

    response = client.post(
        "/admin/invoices",
        json={"organization_id": 1, "title": "Nope", "items": []},
    )
    assert response.status_code == 403


def test_client_cannot_log_into_staff_dashboard(app, client):
    context = create_client_project(app)
    response = client.post(
        "/login",
        data={"email": context["email"], "password": CLIENT_PASSWORD},
        follow_redirects=True,
    )
    assert b"Invalid credentials" in response.data


def test_admin_creates_staff_user(app, client):
    login_admin(client)
    response = client.post(
        "/admin/users",
        json={"name": "Fran", "email": "fran@example.com", "password": "x" * 10, "role": "frontend"},
    )
    assert response.status_code == 201
    with app.app_context():
        assert User.query.filter_by(email="fran@example.com").one().role == "FRONTEND"

    duplicate = client.post(
        "/admin/users",
        json={"name": "Fran", "email": "fran@example.com", "password": "x" * 10},
    )
    assert duplicate.status_code == 400


def test_lead_pipeline_groups_by_status(app, client):
    with app.app_context():
        db.session.add_all(
            [
                Lead(name="New Lead", email="new@example.org", status="NEW"),
                Lead(name="Qualified Lead", email="q@example.org", status="QUALIFIED"),
            ]
        )
        db.session.commit()

    login_admin(client)
    response = client.get("/admin/leads", headers={"Accept": "application/json"})
    payload = response.get_json()
    assert [lead["name"] for lead in payload["NEW"]] == ["New Lead"]
    assert [lead["name"] for lead in payload["QUALIFIED"]] == ["Qualified Lead"]
    assert payload["LOST"] == []

    html_response = client.get("/admin/leads")
    assert b"Qualified Lead" in html_response.data


def test_lead_status_update_rejects_unknown_status(app, client):
    with app.app_context():
        lead = Lead(name="Status Lead", email="status@example.org")
        db.session.add(lead)
        db.session.commit()
        lead_id = lead.id

    login_admin(client)
    response = client.post(f"/admin/leads/{lead_id}/status", json={"status": "won"})
    assert response.status_code == 400

    response = client.post(f"/admin/leads/{lead_id}/status", json={"status": "qualified"})
    assert response.status_code == 200
    assert response.get_json()["lead"]["status"] == "QUALIFIED"


def test_convert_lead_creates_organization_project_and_membership(app, client):
    with app.app_context():
        existing_user = User(name="Lead Person", email="lead@example.org", role="CLIENT")
        lead = Lead(
            name="Lead Person",
            email="lead@example.org",
            company="Youth Arts Collective",
            message="Refresh our site",
            status="QUALIFIED",
            lead_score=80,
        )
        db.session.add_all([existing_user, lead])
        db.session.commit()
        lead_id = lead.id
        user_id = existing_user.id

    login_admin(client)
    response = client.post(
        f"/admin/leads/{lead_id}/convert", json={"estimated_budget": "7,500"}
    )
    assert response.status_code == 201
    project_payload = response.get_json()["project"]
    assert project_payload["status"] == "QUOTED"
    assert project_payload["budget_cents"] == 750000

    with app.app_context():
        lead = db.session.get(Lead, lead_id)
        assert lead.status == "CONVERTED"
        assert lead.lead_score == 0
        assert lead.converted_at is not None
        organization = Organization.query.filter_by(name="Youth Arts Collective").one()
        assert organization.slug == "youth-arts-collective"
        membership = OrganizationMember.query.filter_by(user_id=user_id).one()
        assert membership.role == "OWNER"
        assert membership.organization_id == organization.id

    again = client.post(f"/admin/leads/{lead_id}/convert", json={})
    assert again.status_code == 400
    assert "already converted" in again.get_json()["error"]


def test_convert_lead_requires_executive(app, client):
    create_staff_member(app, email="designer@example.com", role="DESIGNER")
    with app.app_context():
        lead = Lead(name="Gated", email="gated@example.org")
        db.session.add(lead)
        db.session.commit()
        lead_id = lead.id

    client.post("/login", data={"email": "designer@example.com", "password": "DevPass123!"})
    response = client.post(
        f"/admin/leads/{lead_id}/convert", headers={"Accept": "application/json"}
    )
    assert response.status_code == 403


def test_converted_lead_with_project_cannot_be_deleted(app, client):
    with app.app_context():
        lead = Lead(name="Keep Me", email="keep@example.org")
        db.session.add(lead)
        db.session.commit()
        convert_lead_to_project(lead)
        db.session.commit()
        lead_id = lead.id

    login_admin(client)
    response = client.post(
        f"/admin/leads/{lead_id}/delete", headers={"Accept": "application/json"}
    )
    assert response.status_code == 400
    with app.app_context():
        assert db.session.get(Lead, lead_id) is not None


def test_hours_balance_combines_sources_and_ignores_expired(app):
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        plan.support_hours_used = 3
        now = utcnow()
        db.session.add_all(
            [
                RolloverHours(
                    plan=plan,
                    hours=4,
                    hours_remaining=4,
                    source_month="2024-01",
                    expires_at=now + timedelta(days=5),
                ),
                RolloverHours(
                    plan=plan,
                    hours=6,
                    hours_remaining=6,
                    source_month="2023-12",
                    expires_at=now - timedelta(days=1),
                ),
                HourPack(
                    plan=plan,
                    pack_type="SMALL",
                    hours=5,
                    hours_remaining=5,
                    expires_at=now + timedelta(days=60),
                ),
                HourPack(
                    plan=plan,
                    pack_type="SMALL",
                    hours=5,
                    hours_remaining=5,
                    expires_at=now - timedelta(days=2),
                ),
            ]
        )
        db.session.commit()

        balance = get_hours_balance(plan)
        assert balance["monthly_included"] == 8
        assert balance["monthly_remaining"] == 5
        assert balance["rollover_total"] == 4
        assert balance["pack_hours_total"] == 5
        assert balance["total_available"] == 14
        assert balance["at_limit"] is False
        assert len(balance["rollover_expiring_soon"]) == 1
        assert balance["rollover_expiring_soon"][0]["days_until_expiry"] == 5
        assert balance["pack_hours_expiring_soon"] == []
        assert balance["change_requests_remaining"] == 3


def test_unlimited_plan_balance(app):
    context = create_client_project(app, tier="COO")
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        balance = get_hours_balance(plan)
        assert balance["is_unlimited"] is True
        assert balance["total_available"] == -1
        assert balance["change_requests_remaining"] == -1

        result = deduct_hours(plan, 40, "Big redesign")
        db.session.commit()
        assert result["success"] is True
        assert result["remaining_hours"] == -1
        assert plan.support_hours_used == 40


def test_deduct_hours_draws_rollover_then_monthly_then_packs(app):
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        now = utcnow()
        rollover = RolloverHours(
            plan=plan,
            hours=2,
            hours_remaining=2,
            source_month="2024-01",
            expires_at=now + timedelta(days=20),
        )
        lasting_pack = HourPack(
            plan=plan,
            pack_type="PREMIUM",
            hours=10,
            hours_remaining=10,
            never_expires=True,
            purchased_at=now - timedelta(days=30),
        )
        expiring_pack = HourPack(
            plan=plan,
            pack_type="SMALL",
            hours=5,
            hours_remaining=5,
            expires_at=now + timedelta(days=10),
        )
        db.session.add_all([rollover, lasting_pack, expiring_pack])
        db.session.commit()

        result = deduct_hours(plan, 12, "Accessibility fixes", performed_by="Dana")
        db.session.commit()

        assert result["success"] is True
        assert result["hours_deducted"] == 12
        assert result["source"] == "PACK"
        assert result["source_id"] == expiring_pack.id
        assert rollover.hours_remaining == 0
        assert rollover.used_at is not None
        assert plan.support_hours_used == 8
        assert expiring_pack.hours_remaining == 3
        assert lasting_pack.hours_remaining == 10
        assert result["remaining_hours"] == 13

        log = MaintenanceLog.query.filter_by(plan_id=plan.id).one()
        assert log.hours_spent == 12
        assert log.overage is False


def test_deduct_hours_refuses_overage_without_on_demand(app):
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        plan.grace_period_used = True
        plan.support_hours_used = 7
        db.session.commit()

        result = deduct_hours(plan, 3, "Too much work")
        db.session.commit()

        assert result["success"] is False
        assert result["is_overage"] is True
        assert result["overage_hours"] == 2
        assert result["hours_deducted"] == 1
        assert result["error"] == "Insufficient hours available"
        assert plan.support_hours_used == 8


def test_deduct_hours_uses_one_time_grace_period(app):
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        plan.support_hours_used = 8
        db.session.commit()

        first = deduct_hours(plan, 1, "Small fix")
        db.session.commit()
        assert first["success"] is True
        assert first["source"] == "OVERAGE"
        assert plan.grace_period_used is True
        assert plan.support_hours_used == 9

        second = deduct_hours(plan, 0.5, "Another small fix")
        assert second["success"] is False


def test_deduct_hours_bills_overage_with_on_demand(app):
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        plan.on_demand_enabled = True
        plan.grace_period_used = True
        plan.support_hours_used = 6
        db.session.commit()

        result = deduct_hours(plan, 5, "Campaign landing page")
        db.session.commit()
        assert result["success"] is True
        assert result["is_overage"] is True
        assert result["overage_hours"] == 3
        assert plan.support_hours_used == 11

        balance = get_hours_balance(plan)
        assert balance["is_overage"] is True
        assert balance["overage_hours"] == 3


def test_monthly_rollover_respects_cap_and_expires_old_records(app):
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        now = utcnow()
        plan.support_hours_used = 1
        db.session.add_all(
            [
                RolloverHours(
                    plan=plan,
                    hours=12,
                    hours_remaining=12,
                    source_month="2024-02",
                    expires_at=now + timedelta(days=30),
                ),
                RolloverHours(
                    plan=plan,
                    hours=3,
                    hours_remaining=3,
                    source_month="2023-11",
                    expires_at=now - timedelta(days=1),
                ),
            ]
        )
        db.session.commit()

        result = process_monthly_rollover(plan)
        db.session.commit()

        assert result == {"hours_rolled_over": 4.0, "hours_expired": 3.0}
        assert plan.rollover_hours == 16
        records = RolloverHours.query.filter_by(plan_id=plan.id).all()
        assert len(records) == 3
        newest = max(records, key=lambda record: record.id)
        assert newest.hours == 4
        assert newest.source_month == now.strftime("%Y-%m")
        assert sum(1 for record in records if record.is_expired) == 1


def test_close_billing_period_resets_counters(app):
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        plan.support_hours_used = 2
        plan.change_requests_used = 3
        plan.urgent_requests_used = 1
        db.session.commit()

        result = close_billing_period(plan)
        db.session.commit()

        assert result["hours_rolled_over"] == 6
        assert plan.support_hours_used == 0
        assert plan.change_requests_used == 0
        assert plan.urgent_requests_used == 0
        assert app_module.as_utc(plan.current_period_end) > utcnow()


def test_rollover_disabled_for_unlimited_tier(app):
    context = create_client_project(app, tier="COO")
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        assert process_monthly_rollover(plan) == {"hours_rolled_over": 0.0, "hours_expired": 0.0}


def test_can_submit_change_request_limits(app):
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])

        assert can_submit_change_request(plan)["allowed"] is True

        plan.change_requests_used = 3
        blocked = can_submit_change_request(plan)
        assert blocked["allowed"] is False
        assert blocked["reason"] == "Monthly change request limit reached"
        assert blocked["requires_payment"] is True

        plan.change_requests_used = 0
        plan.support_hours_used = 8
        grace = can_submit_change_request(plan)
        assert grace["allowed"] is True
        assert grace["requires_approval"] is True
        assert grace["reason"] == "One-time grace period will be used"

        plan.grace_period_used = True
        assert can_submit_change_request(plan)["allowed"] is False

        plan.on_demand_enabled = True
        plan.daily_request_limit = 2
        plan.requests_today = 2
        plan.last_request_date = utcnow()
        limited = can_submit_change_request(plan)
        assert limited["allowed"] is False
        assert "Daily request limit (2)" in limited["reason"]

        plan.last_request_date = utcnow() - timedelta(days=1)
        assert can_submit_change_request(plan)["allowed"] is True


def test_portal_change_request_submission_creates_task(app, client, sent_emails):
    context = create_client_project(app)
    login_portal(client, context["email"])

    response = client.post(
        f"/portal/projects/{context['project_id']}/change-requests",
        json={
            "title": "Update board page",
            "description": "Add two new board members.\nPhotos attached.",
            "category": "content",
            "priority": "urgent",
            "estimated_hours": 3,
        },
    )
    assert response.status_code == 201
    payload = response.get_json()["change_request"]
    assert payload["status"] == "PENDING"
    assert payload["urgency_fee_cents"] == 5000
    assert payload["requires_client_approval"] is True
    assert payload["flagged_for_review"] is True

    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        assert plan.change_requests_used == 1
        assert plan.urgent_requests_used == 1
        assert plan.requests_today == 1
        task = Task.query.filter_by(change_request_id=payload["id"]).one()
        assert task.title == "Add two new board members."
        assert task.priority == "HIGH"
        assert task.assigned_to_role == "OUTREACH"
        assert task.status == "TODO"

    assert any("New change request" in email["subject"] for email in sent_emails)


def test_portal_change_request_rejected_without_active_plan(app, client):
    context = create_client_project(app, plan_status="PENDING")
    login_portal(client, context["email"])

    response = client.post(
        f"/portal/projects/{context['project_id']}/change-requests",
        json={"description": "Please fix the footer."},
    )
    assert response.status_code == 400
    assert "active maintenance plan" in response.get_json()["error"]


def test_portal_change_request_rejected_at_request_limit(app, client):
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        plan.change_requests_used = 3
        db.session.commit()

    login_portal(client, context["email"])
    response = client.post(
        f"/portal/projects/{context['project_id']}/change-requests",
        json={"description": "One more thing."},
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Monthly change request limit reached"
    with app.app_context():
        assert ChangeRequest.query.count() == 0


def test_portal_change_request_validates_payload(app, client):
    context = create_client_project(app)
    login_portal(client, context["email"])

    response = client.post(
        f"/portal/projects/{context['project_id']}/change-requests",
        json={"description": "Broken", "category": "plumbing"},
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Choose a valid category."


def test_portal_cannot_access_other_organizations_project(app, client):
    create_client_project(app, email="first@example.org")
    other = create_client_project(app, email="second@example.org")
    login_portal(client, "first@example.org")

    response = client.get(
        f"/portal/projects/{other['project_id']}",
        headers={"Accept": "application/json"},
    )
    assert response.status_code == 404


def test_completing_change_request_deducts_hours_once(app, client, sent_emails):
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        change_request = ChangeRequest(
            project_id=context["project_id"],
            maintenance_plan=plan,
            requested_by_id=context["user_id"],
            title="New donate button",
            description="Add a donate button",
        )
        db.session.add(change_request)
        db.session.flush()
        create_task_from_change_request(change_request)
        db.session.commit()
        change_request_id = change_request.id

    login_admin(client)
    response = client.post(
        f"/admin/change-requests/{change_request_id}/update",
        json={"status": "completed", "actual_hours": 7},
    )
    assert response.status_code == 200
    deduction = response.get_json()["deduction"]
    assert deduction["success"] is True
    assert deduction["hours_deducted"] == 7

    second = client.patch(
        f"/admin/change-requests/{change_request_id}",
        json={"status": "completed", "actual_hours": 7},
    )
    assert second.status_code == 200
    assert second.get_json()["deduction"] is None

    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        assert plan.support_hours_used == 7
        change_request = db.session.get(ChangeRequest, change_request_id)
        assert change_request.hours_source == "MONTHLY"
        assert change_request.completed_at is not None
        assert change_request.task.status == "DONE"
        notification = UsageNotification.query.filter_by(plan_id=plan.id).all()
        assert {entry.warning_type for entry in notification} == {"AT_80_PERCENT", "AT_2_HOURS"}

    assert any("80%" in email["subject"] for email in sent_emails)


def test_complimentary_change_request_skips_deduction(app):
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        change_request = ChangeRequest(
            project_id=context["project_id"],
            maintenance_plan=plan,
            title="Typo",
            description="Fix a typo",
        )
        db.session.add(change_request)
        db.session.commit()

        deduction = app_module.update_change_request(
            change_request,
            {"status": "COMPLETED", "actual_hours": 1, "hours_source": "complimentary"},
        )
        db.session.commit()
        assert deduction is None
        assert plan.support_hours_used == 0


def test_usage_warnings_sent_once_per_period(app, sent_emails):
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        plan.support_hours_used = 8
        db.session.commit()

        sent = check_and_send_usage_warnings(plan)
        db.session.commit()
        assert sent == ["AT_LIMIT"]
        assert check_and_send_usage_warnings(plan) == []

    assert sent_emails[-1]["to"] == context["email"]
    assert "Monthly support hours used" in sent_emails[-1]["subject"]


def test_usage_warning_not_recorded_when_delivery_fails(app):
    app.config["NOTIFICATION_EMAIL_SENDER"] = lambda *args: False
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        plan.support_hours_used = 8
        db.session.commit()

        assert check_and_send_usage_warnings(plan) == []
        db.session.commit()
        assert UsageNotification.query.count() == 0


def test_expiry_warnings_for_rollover_and_packs(app, sent_emails):
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        now = utcnow()
        db.session.add_all(
            [
                RolloverHours(
                    plan=plan,
                    hours=2,
                    hours_remaining=2,
                    source_month="2024-03",
                    expires_at=now + timedelta(days=3),
                ),
                HourPack(
                    plan=plan,
                    pack_type="MEDIUM",
                    hours=10,
                    hours_remaining=6,
                    expires_at=now + timedelta(days=6),
                ),
                HourPack(
                    plan=plan,
                    pack_type="LARGE",
                    hours=20,
                    hours_remaining=20,
                    expires_at=now + timedelta(days=20),
                ),
            ]
        )
        db.session.commit()

        sent = check_and_send_usage_warnings(plan)
        db.session.commit()
        assert sent == ["ROLLOVER_EXPIRING", "PACK_EXPIRING"]
        keys = {entry.period_key for entry in UsageNotification.query.all()}
        assert any(key.startswith("rollover-") for key in keys)
        assert any(key.startswith("pack-") for key in keys)

    assert "Medium hour pack" in sent_emails[-1]["body"]


def test_expire_hour_packs_deactivates_past_due_packs(app):
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        now = utcnow()
        db.session.add_all(
            [
                HourPack(
                    plan=plan,
                    pack_type="SMALL",
                    hours=5,
                    hours_remaining=5,
                    expires_at=now - timedelta(days=1),
                ),
                HourPack(
                    plan=plan,
                    pack_type="PREMIUM",
                    hours=10,
                    hours_remaining=10,
                    never_expires=True,
                ),
            ]
        )
        db.session.commit()

        assert expire_hour_packs() == 1
        db.session.commit()
        assert HourPack.query.filter_by(is_active=True).count() == 1


def test_record_hour_pack_purchase_is_idempotent(app):
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        pack, created = record_hour_pack_purchase(plan, "medium", "pi_pack_1")
        db.session.commit()
        assert created is True
        assert pack.hours == 10
        assert pack.cost_cents == 65000
        assert app_module.days_until(pack.expires_at) == 90

        again, created_again = record_hour_pack_purchase(plan, "MEDIUM", "pi_pack_1")
        assert created_again is False
        assert again.id == pack.id

        premium, _ = record_hour_pack_purchase(plan, "PREMIUM", "pi_pack_2")
        db.session.commit()
        assert premium.never_expires is True
        assert premium.expires_at is None

        with pytest.raises(BillingError):
            record_hour_pack_purchase(plan, "GIANT", "pi_pack_3")


def test_task_claim_submit_review_flow(app, client):
    staff_id = create_staff_member(app)
    with app.app_context():
        task = Task(title="Build donation form", status="TODO", priority="HIGH")
        db.session.add(task)
        db.session.commit()
        task_id = task.id

    client.post("/login", data={"email": "dev@example.com", "password": "DevPass123!"})
    claim = client.post(f"/admin/tasks/{task_id}/claim", headers={"Accept": "application/json"})
    assert claim.status_code == 200
    assert claim.get_json()["task"]["assigned_to_id"] == staff_id
    assert claim.get_json()["task"]["status"] == "IN_PROGRESS"

    again = client.post(f"/admin/tasks/{task_id}/claim", headers={"Accept": "application/json"})
    assert again.status_code == 400

    submit = client.post(
        f"/admin/tasks/{task_id}/submit",
        json={"notes": "Ready for review", "actual_hours": 3.5},
    )
    assert submit.status_code == 200
    assert submit.get_json()["task"]["status"] == "SUBMITTED"

    forbidden = client.post(f"/admin/tasks/{task_id}/review", json={"decision": "approve"})
    assert forbidden.status_code == 403

    client.get("/logout")
    login_admin(client)
    reject = client.post(
        f"/admin/tasks/{task_id}/review",
        json={"decision": "reject", "notes": "Add validation"},
    )
    assert reject.status_code == 200
    assert reject.get_json()["task"]["status"] == "IN_PROGRESS"
    assert "Add validation" in reject.get_json()["task"]["submission_notes"]

    with app.app_context():
        task = db.session.get(Task, task_id)
        task.status = "SUBMITTED"
        db.session.commit()

    approve = client.post(f"/admin/tasks/{task_id}/review", json={"decision": "approve"})
    assert approve.get_json()["task"]["status"] == "AWAITING_PAYOUT"
    assert approve.get_json()["task"]["approved_at"] is not None


def test_only_assignee_can_submit_task(app, client):
    create_staff_member(app)
    with app.app_context():
        admin = User.query.filter_by(email=TEST_ADMIN_EMAIL).one()
        task = Task(title="Someone else's", status="IN_PROGRESS", assigned_to_id=admin.id)
        db.session.add(task)
        db.session.commit()
        task_id = task.id

    client.post("/login", data={"email": "dev@example.com", "password": "DevPass123!"})
    response = client.post(f"/admin/tasks/{task_id}/submit", json={})
    assert response.status_code == 400
    assert "Only the assignee" in response.get_json()["error"]


def test_task_stats_and_bulk_status(app, client):
    with app.app_context():
        db.session.add_all(
            [
                Task(title="A", status="TODO", due_date=date.today() - timedelta(days=2)),
                Task(title="B", status="TODO"),
                Task(title="C", status="DONE"),
            ]
        )
        db.session.commit()
        task_ids = [task.id for task in Task.query.order_by(Task.id).all()]

    login_admin(client)
    stats = client.get("/admin/tasks/stats").get_json()
    assert stats["TODO"] == 2
    assert stats["DONE"] == 1
    assert stats["total"] == 3
    assert stats["overdue"] == 1

    response = client.post(
        "/admin/tasks/bulk",
        json={"action": "status", "status": "done", "task_ids": task_ids[:2]},
    )
    assert response.status_code == 200
    assert response.get_json()["updated"] == 2
    with app.app_context():
        assert Task.query.filter_by(status="DONE").count() == 3
        assert all(db.session.get(Task, task_id).completed_at for task_id in task_ids[:2])


def test_create_task_from_change_request_is_idempotent(app):
    context = create_client_project(app)
    with app.app_context():
        change_request = ChangeRequest(
            project_id=context["project_id"],
            title="Security patch",
            description="",
            category="SECURITY",
            priority="EMERGENCY",
        )
        db.session.add(change_request)
        db.session.flush()
        first = create_task_from_change_request(change_request)
        db.session.commit()
        second = create_task_from_change_request(change_request)
        assert first.id == second.id
        assert first.title == "Security patch"
        assert first.assigned_to_role == "BACKEND"
        assert first.priority == "HIGH"


def test_invoice_creation_numbers_and_totals(app, client):
    context = create_client_project(app, with_plan=False)
    login_admin(client)
    response = client.post(
        "/admin/invoices",
        json={
            "organization_id": context["organization_id"],
            "project_id": context["project_id"],
            "title": "Website build deposit",
            "tax": "12.50",
            "items": [
                {"description": "Design", "quantity": 2, "rate": "1,000"},
                {"description": "Hosting setup", "rate_cents": 15000},
            ],
        },
    )
    assert response.status_code == 201
    invoice = response.get_json()["invoice"]
    assert invoice["number"] == f"INV-{utcnow().year}-00001"
    assert invoice["subtotal_cents"] == 215000
    assert invoice["tax_cents"] == 1250
    assert invoice["total_cents"] == 216250
    assert invoice["status"] == "DRAFT"

    with app.app_context():
        assert next_invoice_number() == f"INV-{utcnow().year}-00002"


def test_invoice_items_validation():
    with pytest.raises(WorkflowError):
        parse_invoice_items([])
    with pytest.raises(WorkflowError):
        parse_invoice_items([{"description": "No rate"}])
    with pytest.raises(WorkflowError):
        parse_invoice_items([{"description": "Negative", "rate_cents": -5}])
    items = parse_invoice_items([{"description": "Thing", "quantity": "3", "rate": "$10"}])
    assert items == [
        {"description": "Thing", "quantity": 3, "rate_cents": 1000, "amount_cents": 3000}
    ]


def test_mark_invoice_paid_records_payment_and_receipt(app, sent_emails):
    context = create_client_project(app, with_plan=False)
    with app.app_context():
        organization = db.session.get(Organization, context["organization_id"])
        invoice = create_invoice(
            organization,
            "Launch",
            [{"description": "Launch", "quantity": 1, "rate_cents": 50000, "amount_cents": 50000}],
            status="SENT",
        )
        db.session.commit()

        assert mark_invoice_paid(invoice, method="check") is True
        db.session.commit()
        assert invoice.status == "PAID"
        assert invoice.receipt_sent_at is not None
        assert Payment.query.filter_by(invoice_id=invoice.id).one().amount_cents == 50000

        assert mark_invoice_paid(invoice) is False
        assert Payment.query.count() == 1

    assert sent_emails[-1]["to"] == context["email"]
    assert "Receipt" in sent_emails[-1]["subject"]


def test_paid_invoice_cannot_be_deleted(app, client):
    context = create_client_project(app, with_plan=False)
    with app.app_context():
        invoice = Invoice(
            number="INV-2024-00009",
            organization_id=context["organization_id"],
            title="Paid",
            status="PAID",
            total_cents=1000,
        )
        db.session.add(invoice)
        db.session.commit()
        invoice_id = invoice.id

    login_admin(client)
    response = client.post(
        f"/admin/invoices/{invoice_id}/delete", headers={"Accept": "application/json"}
    )
    assert response.status_code == 400


def test_mark_overdue_invoices(app):
    context = create_client_project(app, with_plan=False)
    with app.app_context():
        db.session.add_all(
            [
                Invoice(
                    number="INV-2024-00001",
                    organization_id=context["organization_id"],
                    title="Late",
                    status="SENT",
                    due_date=date.today() - timedelta(days=3),
                ),
                Invoice(
                    number="INV-2024-00002",
                    organization_id=context["organization_id"],
                    title="Not yet",
                    status="SENT",
                    due_date=date.today() + timedelta(days=3),
                ),
            ]
        )
        db.session.commit()
        assert mark_overdue_invoices() == 1
        db.session.commit()
        assert Invoice.query.filter_by(status="OVERDUE").one().title == "Late"


def test_send_invoice_through_stripe(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    context = create_client_project(app, with_plan=False)
    with app.app_context():
        organization = db.session.get(Organization, context["organization_id"])
        invoice = create_invoice(
            organization,
            "Build",
            parse_invoice_items([{"description": "Build", "quantity": 1, "rate_cents": 100000}]),
            tax_cents=500,
        )
        db.session.commit()
        invoice_id = invoice.id

    login_admin(client)
    response = client.post(
        f"/admin/invoices/{invoice_id}/send", headers={"Accept": "application/json"}
    )
    assert response.status_code == 200
    payload = response.get_json()["invoice"]
    assert payload["status"] == "SENT"
    assert payload["hosted_invoice_url"] == "https://invoice.stripe.test/in_1"
    assert len(stub.InvoiceItem.created) == 2
    assert stub.Customer.created[0]["name"] == "Helping Hands"

    again = client.post(
        f"/admin/invoices/{invoice_id}/send", headers={"Accept": "application/json"}
    )
    assert again.status_code == 400


def test_portal_invoice_checkout(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    context = create_client_project(app, with_plan=False)
    with app.app_context():
        invoice = Invoice(
            number="INV-2024-00042",
            organization_id=context["organization_id"],
            title="Deposit",
            status="SENT",
            total_cents=250000,
        )
        db.session.add(invoice)
        db.session.commit()
        invoice_id = invoice.id

    login_portal(client, context["email"])
    response = client.post(
        f"/portal/invoices/{invoice_id}/pay", headers={"Accept": "application/json"}
    )
    assert response.status_code == 200
    assert response.get_json()["url"].startswith("https://checkout.stripe.test/")
    created = stub.checkout.Session.created[0]
    assert created["mode"] == "payment"
    assert created["metadata"] == {"type": "invoice", "invoice_id": str(invoice_id)}
    assert created["line_items"][0]["price_data"]["unit_amount"] == 250000


def test_webhook_checkout_marks_invoice_paid_once(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    context = create_client_project(app, with_plan=False)
    with app.app_context():
        invoice = Invoice(
            number="INV-2024-00077",
            organization_id=context["organization_id"],
            title="Deposit",
            status="SENT",
            total_cents=90000,
        )
        db.session.add(invoice)
        db.session.commit()
        invoice_id = invoice.id

    session_object = SimpleNamespace(
        id="cs_paid",
        mode="payment",
        payment_status="paid",
        payment_intent="pi_paid",
        amount_total=90000,
        metadata={"type": "invoice", "invoice_id": str(invoice_id)},
    )
    response = send_webhook(client, stub, "checkout.session.completed", session_object, "evt_1")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}

    duplicate = send_webhook(client, stub, "checkout.session.completed", session_object, "evt_1")
    assert duplicate.get_json() == {"status": "duplicate"}

    with app.app_context():
        invoice = db.session.get(Invoice, invoice_id)
        assert invoice.status == "PAID"
        assert invoice.stripe_checkout_session_id == "cs_paid"
        assert Payment.query.filter_by(invoice_id=invoice_id).count() == 1
        assert StripeWebhookEvent.query.filter_by(stripe_event_id="evt_1").one().handled


def test_webhook_invoice_paid_records_charge(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    context = create_client_project(app, with_plan=False)
    with app.app_context():
        invoice = Invoice(
            number="INV-2024-00088",
            organization_id=context["organization_id"],
            title="Monthly",
            status="SENT",
            total_cents=50000,
            stripe_invoice_id="in_remote",
        )
        db.session.add(invoice)
        db.session.commit()
        invoice_id = invoice.id

    stripe_invoice = SimpleNamespace(
        id="in_remote",
        charge="ch_123",
        payment_intent="pi_123",
        amount_paid=50000,
        currency="usd",
        status_transitions=SimpleNamespace(paid_at=1_700_000_000),
        metadata={},
    )
    assert send_webhook(client, stub, "invoice.paid", stripe_invoice, "evt_2").status_code == 200
    assert send_webhook(
        client, stub, "invoice.payment_succeeded", stripe_invoice, "evt_3"
    ).get_json() == {"status": "ok"}

    with app.app_context():
        invoice = db.session.get(Invoice, invoice_id)
        assert invoice.status == "PAID"
        assert app_module.as_utc(invoice.paid_at).year == 2023
        payments = Payment.query.filter_by(invoice_id=invoice_id).all()
        assert len(payments) == 1
        assert payments[0].stripe_charge_id == "ch_123"


def test_webhook_ignores_unknown_events(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    response = send_webhook(
        client, stub, "customer.created", SimpleNamespace(id="cus_1"), "evt_unknown"
    )
    assert response.status_code == 200
    assert response.get_json() == {"status": "ignored"}
    with app.app_context():
        event = StripeWebhookEvent.query.filter_by(stripe_event_id="evt_unknown").one()
        assert event.handled is False


def test_webhook_requires_secret_or_unsigned_opt_in(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    app.config["STRIPE_WEBHOOK_ALLOW_UNSIGNED"] = False
    response = send_webhook(client, stub, "invoice.paid", SimpleNamespace(id="in_x"))
    assert response.status_code == 500

    app.config["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
    missing = client.post("/stripe/webhook", data="{}")
    assert missing.status_code == 400

    bad = client.post(
        "/stripe/webhook", data="{}", headers={"Stripe-Signature": "forged"}
    )
    assert bad.status_code == 400

    stub.Event.next_event = SimpleNamespace(
        id="evt_signed", type="customer.created", data=SimpleNamespace(object={"id": "x"})
    )
    good = client.post(
        "/stripe/webhook", data="{}", headers={"Stripe-Signature": "valid-signature"}
    )
    assert good.status_code == 200


def test_webhook_hour_pack_checkout_adds_hours(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    context = create_client_project(app)
    session_object = SimpleNamespace(
        id="cs_pack",
        mode="payment",
        payment_status="paid",
        payment_intent="pi_pack",
        amount_total=35000,
        metadata={
            "type": "hour-pack",
            "pack_id": "SMALL",
            "hours": "5",
            "expiration_days": "60",
            "plan_id": str(context["plan_id"]),
        },
    )
    response = send_webhook(client, stub, "checkout.session.completed", session_object, "evt_pack")
    assert response.get_json() == {"status": "ok"}

    replay = send_webhook(
        client, stub, "checkout.session.completed", session_object, "evt_pack_retry"
    )
    assert replay.get_json() == {"status": "ok"}

    with app.app_context():
        packs = HourPack.query.filter_by(plan_id=context["plan_id"]).all()
        assert len(packs) == 1
        assert packs[0].hours_remaining == 5
        assert packs[0].stripe_session_id == "cs_pack"
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        assert get_hours_balance(plan)["total_available"] == 13


def test_webhook_subscription_checkout_activates_plan(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    context = create_client_project(app, plan_status="PENDING")
    session_object = SimpleNamespace(
        id="cs_sub",
        mode="subscription",
        payment_status="paid",
        subscription="sub_123",
        metadata={
            "type": "maintenance-subscription",
            "plan_id": str(context["plan_id"]),
            "tier": "DIRECTOR",
        },
    )
    response = send_webhook(client, stub, "checkout.session.completed", session_object, "evt_sub")
    assert response.get_json() == {"status": "ok"}

    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        assert plan.status == "ACTIVE"
        assert plan.tier == "DIRECTOR"
        assert plan.stripe_subscription_id == "sub_123"
        assert plan.project.maintenance_status == "ACTIVE"
        assert plan.current_period_end is not None


def test_webhook_subscription_renewal_closes_billing_period(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        plan.stripe_subscription_id = "sub_renew"
        plan.support_hours_used = 5
        db.session.commit()

    new_start = int((utcnow() + timedelta(days=26)).timestamp())
    new_end = int((utcnow() + timedelta(days=56)).timestamp())
    subscription = {
        "id": "sub_renew",
        "status": "active",
        "cancel_at_period_end": False,
        "metadata": {},
        "items": {"data": [{"current_period_start": new_start, "current_period_end": new_end}]},
    }
    response = send_webhook(
        client,
        stub,
        "customer.subscription.updated",
        SimpleNamespace(**subscription),
        "evt_renew",
    )
    assert response.get_json() == {"status": "ok"}

    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        assert plan.support_hours_used == 0
        assert plan.rollover_hours == 3
        assert int(app_module.as_utc(plan.current_period_start).timestamp()) == new_start


def test_webhook_subscription_deleted_cancels_plan(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        plan.stripe_subscription_id = "sub_gone"
        db.session.commit()

    response = send_webhook(
        client,
        stub,
        "customer.subscription.deleted",
        SimpleNamespace(id="sub_gone", metadata={}),
        "evt_gone",
    )
    assert response.get_json() == {"status": "ok"}
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        assert plan.status == "CANCELLED"
        assert plan.stripe_subscription_id is None
        assert plan.project.maintenance_status == "CANCELLED"


def test_resubscribing_cancelled_plan_opens_fresh_period(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    context = create_client_project(app, plan_status="CANCELLED")
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        plan.current_period_start = utcnow() - timedelta(days=120)
        plan.current_period_end = utcnow() - timedelta(days=90)
        plan.cancelled_at = utcnow() - timedelta(days=90)
        plan.support_hours_used = 7
        plan.change_requests_used = 3
        plan.requests_today = 2
        db.session.commit()

    session_object = SimpleNamespace(
        id="cs_resub",
        mode="subscription",
        payment_status="paid",
        subscription="sub_again",
        metadata={
            "type": "maintenance-subscription",
            "plan_id": str(context["plan_id"]),
            "tier": "ESSENTIALS",
        },
    )
    response = send_webhook(
        client, stub, "checkout.session.completed", session_object, "evt_resub"
    )
    assert response.get_json() == {"status": "ok"}

    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        assert plan.status == "ACTIVE"
        assert plan.cancelled_at is None
        assert app_module.as_utc(plan.current_period_start) > utcnow() - timedelta(days=1)
        assert app_module.as_utc(plan.current_period_end) > utcnow()
        assert plan.support_hours_used == 0
        assert plan.change_requests_used == 0
        assert plan.requests_today == 0
        assert can_submit_change_request(plan)["allowed"] is True


def create_stripe_backed_invoice(app, organization_id, stripe_invoice_id, **fields):
    with app.app_context():
        invoice = Invoice(
            number=f"INV-2024-{stripe_invoice_id[-5:]}",
            organization_id=organization_id,
            title="Website build",
            total_cents=120000,
            stripe_invoice_id=stripe_invoice_id,
            **fields,
        )
        db.session.add(invoice)
        db.session.commit()
        return invoice.id


def test_webhook_payment_failed_marks_overdue_only_when_past_due(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    context = create_client_project(app, with_plan=False)
    late_id = create_stripe_backed_invoice(
        app,
        context["organization_id"],
        "in_late1",
        status="SENT",
        due_date=date.today() - timedelta(days=3),
    )
    current_id = create_stripe_backed_invoice(
        app,
        context["organization_id"],
        "in_curr1",
        status="SENT",
        due_date=date.today() + timedelta(days=10),
    )

    for stripe_id, event_id in (("in_late1", "evt_fail_late"), ("in_curr1", "evt_fail_curr")):
        response = send_webhook(
            client,
            stub,
            "invoice.payment_failed",
            SimpleNamespace(id=stripe_id, metadata={}),
            event_id,
        )
        assert response.get_json() == {"status": "ok"}

    with app.app_context():
        assert db.session.get(Invoice, late_id).status == "OVERDUE"
        assert db.session.get(Invoice, current_id).status == "SENT"


def test_webhook_invoice_finalized_marks_sent(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    context = create_client_project(app, with_plan=False)
    invoice_id = create_stripe_backed_invoice(
        app, context["organization_id"], "in_final", status="DRAFT"
    )

    response = send_webhook(
        client,
        stub,
        "invoice.finalized",
        SimpleNamespace(
            id="in_final",
            hosted_invoice_url="https://invoice.stripe.test/in_final",
            metadata={},
        ),
        "evt_final",
    )
    assert response.get_json() == {"status": "ok"}

    with app.app_context():
        invoice = db.session.get(Invoice, invoice_id)
        assert invoice.status == "SENT"
        assert invoice.sent_at is not None
        assert invoice.hosted_invoice_url == "https://invoice.stripe.test/in_final"


def test_webhook_invoice_voided_cancels_unpaid_invoice_only(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    context = create_client_project(app, with_plan=False)
    open_id = create_stripe_backed_invoice(
        app, context["organization_id"], "in_void1", status="SENT"
    )
    paid_id = create_stripe_backed_invoice(
        app, context["organization_id"], "in_void2", status="PAID", paid_at=utcnow()
    )

    for stripe_id, event_id in (("in_void1", "evt_void_open"), ("in_void2", "evt_void_paid")):
        response = send_webhook(
            client,
            stub,
            "invoice.voided",
            SimpleNamespace(id=stripe_id, metadata={}),
            event_id,
        )
        assert response.get_json() == {"status": "ok"}

    with app.app_context():
        assert db.session.get(Invoice, open_id).status == "CANCELLED"
        assert db.session.get(Invoice, paid_id).status == "PAID"


def test_webhook_subscription_created_attaches_and_activates(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    context = create_client_project(app, plan_status="PENDING")
    start = int(utcnow().timestamp())
    end = int((utcnow() + timedelta(days=30)).timestamp())

    response = send_webhook(
        client,
        stub,
        "customer.subscription.created",
        SimpleNamespace(
            id="sub_created",
            status="active",
            metadata={"plan_id": str(context["plan_id"])},
            current_period_start=start,
            current_period_end=end,
        ),
        "evt_created",
    )
    assert response.get_json() == {"status": "ok"}

    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        assert plan.status == "ACTIVE"
        assert plan.stripe_subscription_id == "sub_created"
        assert plan.project.stripe_subscription_id == "sub_created"
        assert plan.project.maintenance_status == "ACTIVE"
        assert int(app_module.as_utc(plan.current_period_start).timestamp()) == start
        assert int(app_module.as_utc(plan.current_period_end).timestamp()) == end


def test_portal_subscribe_starts_subscription_checkout(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    context = create_client_project(app, with_plan=False)
    login_portal(client, context["email"])

    response = client.post(
        f"/portal/projects/{context['project_id']}/plan/subscribe",
        json={"tier": "director"},
    )
    assert response.status_code == 200
    created = stub.checkout.Session.created[0]
    assert created["mode"] == "subscription"
    assert created["line_items"] == [{"price": "price_director", "quantity": 1}]
    assert created["metadata"]["type"] == "maintenance-subscription"

    with app.app_context():
        plan = MaintenancePlan.query.filter_by(project_id=context["project_id"]).one()
        assert plan.status == "PENDING"
        assert plan.tier == "DIRECTOR"
        assert plan.stripe_checkout_session_id == response.get_json()["session_id"]


def test_portal_change_tier_updates_stripe_subscription(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        plan.stripe_subscription_id = "sub_tier"
        db.session.commit()
    stub.Subscription.retrieve_map["sub_tier"] = {
        "id": "sub_tier",
        "items": {"data": [SimpleNamespace(id="si_1")]},
    }

    login_portal(client, context["email"])
    response = client.post(
        f"/portal/projects/{context['project_id']}/plan/change-tier",
        json={"tier": "DIRECTOR"},
    )
    assert response.status_code == 200
    assert response.get_json()["plan"]["tier"] == "DIRECTOR"
    subscription_id, changes = stub.Subscription.modified[0]
    assert subscription_id == "sub_tier"
    assert changes["items"] == [{"id": "si_1", "price": "price_director"}]


def test_portal_cancel_plan_without_stripe(app, client):
    context = create_client_project(app)
    login_portal(client, context["email"])
    response = client.post(
        f"/portal/projects/{context['project_id']}/plan/cancel",
        headers={"Accept": "application/json"},
    )
    assert response.status_code == 200
    assert response.get_json()["plan"]["status"] == "CANCELLED"


def test_portal_on_demand_settings_validate_limit(app, client):
    context = create_client_project(app)
    login_portal(client, context["email"])
    url = f"/portal/projects/{context['project_id']}/plan/on-demand"

    bad = client.post(url, json={"daily_request_limit": 25})
    assert bad.status_code == 400

    good = client.post(url, json={"on_demand_enabled": True, "daily_request_limit": 5})
    assert good.status_code == 200
    assert good.get_json()["plan"]["on_demand_enabled"] is True
    assert good.get_json()["plan"]["daily_request_limit"] == 5


def test_portal_hour_pack_checkout_metadata(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    context = create_client_project(app)
    login_portal(client, context["email"])

    response = client.post(
        f"/portal/projects/{context['project_id']}/hour-packs",
        json={"pack_id": "large"},
    )
    assert response.status_code == 200
    created = stub.checkout.Session.created[0]
    assert created["metadata"]["type"] == "hour-pack"
    assert created["metadata"]["pack_id"] == "LARGE"
    assert created["metadata"]["hours"] == "20"
    assert created["line_items"][0]["price_data"]["unit_amount"] == 120000


def test_portal_signup_creates_owner_membership(app, client):
    response = client.post(
        "/portal/signup",
        data={
            "name": "New Client",
            "email": "new@client.org",
            "password": "longenough",
            "organization": "River City Shelter",
        },
        follow_redirects=False,
    )
    assert response.status_code == 302
    with app.app_context():
        user = User.query.filter_by(email="new@client.org").one()
        assert user.role == "CLIENT"
        assert user.memberships[0].role == "OWNER"
        assert user.organizations[0].slug == "river-city-shelter"


def test_portal_signup_does_not_join_existing_organization(app, client):
    with app.app_context():
        organization = Organization(
            name="Helping Hands", slug="helping-hands", email="office@helpinghands.org"
        )
        db.session.add(organization)
        db.session.commit()
        organization_id = organization.id

    response = client.post(
        "/portal/signup",
        data={
            "name": "Someone Else",
            "email": "office@helpinghands.org",
            "password": "longenough",
        },
        follow_redirects=False,
    )
    assert response.status_code == 302
    with app.app_context():
        user = User.query.filter_by(email="office@helpinghands.org").one()
        assert user.memberships == []
        assert (
            OrganizationMember.query.filter_by(organization_id=organization_id).count()
            == 0
        )


def test_portal_dashboard_lists_projects(app, client):
    context = create_client_project(app)
    login_portal(client, context["email"])
    response = client.get("/portal")
    assert response.status_code == 200
    assert b"Helping Hands Website" in response.data
    assert b"8 hours available" in response.data


def test_dashboard_snapshot_counts(app, client):
    context = create_client_project(app)
    with app.app_context():
        db.session.add_all(
            [
                Lead(name="Fresh", email="fresh@example.org"),
                Task(title="Open", status="TODO"),
                Invoice(
                    number="INV-2024-00100",
                    organization_id=context["organization_id"],
                    title="Open invoice",
                    status="SENT",
                    total_cents=12345,
                ),
            ]
        )
        db.session.commit()
        overview = get_dashboard_overview_snapshot(app)
        assert overview["active_plans"] == 1
        assert overview["open_tasks"] == 1
        assert overview["outstanding_cents"] == 12345
        assert overview["pipeline_counts"]["NEW"] == 1
        assert overview["new_leads_this_week"] == 1

    login_admin(client)
    response = client.get("/dashboard", headers={"Accept": "application/json"})
    assert response.get_json()["recent_leads"][0]["name"] == "Fresh"


def test_admin_search_matches_across_records(app, client):
    create_client_project(app, with_plan=False)
    login_admin(client)
    response = client.get("/admin/search?q=helping")
    payload = response.get_json()
    assert payload["organizations"][0]["name"] == "Helping Hands"
    assert payload["projects"][0]["name"] == "Helping Hands Website"
    assert client.get("/admin/search?q=h").get_json()["projects"] == []


def test_admin_log_hours_route(app, client):
    context = create_client_project(app)
    login_admin(client)
    response = client.post(
        f"/admin/plans/{context['plan_id']}/log-hours",
        json={"hours": 2, "description": "Plugin updates"},
    )
    assert response.status_code == 200
    assert response.get_json()["deduction"]["source"] == "MONTHLY"

    missing = client.post(
        f"/admin/plans/{context['plan_id']}/log-hours", json={"hours": 2}
    )
    assert missing.status_code == 400


def test_stripe_settings_saved_from_dashboard(app, client, monkeypatch):
    install_stripe_stub(app, monkeypatch)
    login_admin(client)
    response = client.post(
        "/admin/settings/stripe",
        data={"secret_key": " sk_live ", "publishable_key": "pk_live", "webhook_secret": ""},
        follow_redirects=True,
    )
    assert response.status_code == 200
    assert app.config["STRIPE_SECRET_KEY"] == "sk_live"
    with app.app_context():
        config = StripeConfig.query.one()
        assert config.publishable_key == "pk_live"
        assert config.webhook_secret is None


def test_cli_close_billing_periods(app):
    context = create_client_project(app)
    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        plan.current_period_end = utcnow() - timedelta(days=1)
        db.session.commit()

    runner = app.test_cli_runner()
    result = runner.invoke(args=["close-billing-periods"])
    assert result.exit_code == 0
    assert "Closed 1 billing periods." in result.output

    with app.app_context():
        plan = db.session.get(MaintenancePlan, context["plan_id"])
        assert app_module.as_utc(plan.current_period_end) > utcnow()
        assert RolloverHours.query.filter_by(plan_id=plan.id).count() == 1
