import json
import math
import os
import re
import secrets
import smtplib
import ssl
import time
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from email.message import EmailMessage
from email.utils import formataddr, format_datetime, make_msgid
from functools import wraps
from pathlib import Path

import click
import stripe
from dotenv import load_dotenv
from flask import (
    Flask,
    abort,
    current_app,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from stripe import SignatureVerificationError, StripeError
from werkzeug.security import check_password_hash, generate_password_hash

load_dotenv()

db = SQLAlchemy()

STRIPE_DEFAULT_CURRENCY = "usd"

DASHBOARD_OVERVIEW_CACHE_KEY = "_dashboard_overview_cache"
DASHBOARD_OVERVIEW_CACHE_SECONDS_DEFAULT = 10.0

STAFF_SESSION_KEY = "staff_user_id"
PORTAL_SESSION_KEY = "portal_user_id"

STAFF_ROLES = [
    "CEO",
    "CFO",
    "ADMIN",
    "STAFF",
    "FRONTEND",
    "BACKEND",
    "OUTREACH",
    "DESIGNER",
]
EXECUTIVE_ROLES = ("CEO", "CFO", "ADMIN")
USER_ROLE_OPTIONS = STAFF_ROLES + ["CLIENT"]

LEAD_STATUS_OPTIONS = [
    "NEW",
    "CONTACTED",
    "QUALIFIED",
    "PROPOSAL_SENT",
    "CONVERTED",
    "LOST",
]
WEBSITE_QUALITY_OPTIONS = ["POOR", "FAIR", "GOOD", "EXCELLENT"]
PROJECT_STATUS_OPTIONS = [
    "LEAD",
    "QUOTED",
    "DEPOSIT_PAID",
    "ACTIVE",
    "REVIEW",
    "COMPLETED",
    "MAINTENANCE",
    "CANCELLED",
]
CLOSED_PROJECT_STATUSES = {"COMPLETED", "CANCELLED"}
TASK_STATUS_OPTIONS = ["TODO", "IN_PROGRESS", "SUBMITTED", "AWAITING_PAYOUT", "DONE"]
TASK_PRIORITY_OPTIONS = ["LOW", "MEDIUM", "HIGH"]
CHANGE_REQUEST_STATUS_OPTIONS = [
    "PENDING",
    "APPROVED",
    "IN_PROGRESS",
    "COMPLETED",
    "REJECTED",
]
CHANGE_REQUEST_CATEGORY_OPTIONS = [
    "CONTENT",
    "BUG",
    "FEATURE",
    "DESIGN",
    "SEO",
    "SECURITY",
    "OTHER",
]
CHANGE_REQUEST_PRIORITY_OPTIONS = ["LOW", "NORMAL", "HIGH", "URGENT", "EMERGENCY"]
HOURS_SOURCE_OPTIONS = ["MONTHLY", "ROLLOVER", "PACK", "OVERAGE", "COMPLIMENTARY"]
INVOICE_STATUS_OPTIONS = ["DRAFT", "SENT", "PAID", "OVERDUE", "CANCELLED"]
OPEN_INVOICE_STATUSES = {"DRAFT", "SENT", "OVERDUE"}
PLAN_STATUS_OPTIONS = ["PENDING", "ACTIVE", "PAUSED", "CANCELLED"]
BILLING_CYCLE_OPTIONS = ["MONTHLY", "ANNUAL"]

CHANGE_REQUEST_TASK_PRIORITY = {
    "LOW": "LOW",
    "NORMAL": "MEDIUM",
    "HIGH": "HIGH",
    "URGENT": "HIGH",
    "EMERGENCY": "HIGH",
}
CHANGE_REQUEST_TASK_ROLE = {
    "CONTENT": "OUTREACH",
    "BUG": "BACKEND",
    "FEATURE": "BACKEND",
    "DESIGN": "DESIGNER",
    "SEO": "OUTREACH",
    "SECURITY": "BACKEND",
    "OTHER": None,
}

# -1 marks an unlimited allowance throughout the tier catalog.
UNLIMITED = -1

NONPROFIT_TIERS: dict[str, dict[str, object]] = {
    "ESSENTIALS": {
        "id": "ESSENTIALS",
        "name": "Nonprofit Essentials",
        "short_name": "Tier 1",
        "description": (
            "Best for small sites that just need stability and fixes. "
            "We keep your site safe, fast, and running."
        ),
        "build_price": 600000,
        "monthly_price": 50000,
        "annual_price": 510000,
        "annual_discount": 0.15,
        "support_hours_included": 8,
        "change_requests_included": 3,
        "subscriptions_included": 2,
        "max_subscriptions": 3,
        "addon_cost": 20000,
        "addon_hours": 2,
        "rollover_enabled": True,
        "rollover_cap": 16,
        "rollover_expiry_days": 60,
        "warning_days": [30, 14, 7],
    },
    "DIRECTOR": {
        "id": "DIRECTOR",
        "name": "Digital Director Platform",
        "short_name": "Tier 2",
        "description": (
            "Best for orgs that update content often and want real momentum. "
            "We actively manage and improve your digital presence."
        ),
        "build_price": 750000,
        "monthly_price": 75000,
        "annual_price": 765000,
        "annual_discount": 0.15,
        "support_hours_included": 16,
        "change_requests_included": 5,
        "subscriptions_included": 3,
        "max_subscriptions": 6,
        "addon_cost": 20000,
        "addon_hours": 3,
        "rollover_enabled": True,
        "rollover_cap": 32,
        "rollover_expiry_days": 90,
        "warning_days": [60, 30, 14, 7],
    },
    "COO": {
        "id": "COO",
        "name": "Digital COO System",
        "short_name": "Tier 3",
        "description": (
            "Best for serious organizations that want a dedicated tech lead. "
            "Your outsourced digital leadership."
        ),
        "build_price": 1250000,
        "monthly_price": 200000,
        "annual_price": 2040000,
        "annual_discount": 0.15,
        # Fair-use policy applies to unlimited hours and requests.
        "support_hours_included": UNLIMITED,
        "change_requests_included": UNLIMITED,
        "subscriptions_included": UNLIMITED,
        "max_subscriptions": UNLIMITED,
        "addon_cost": 0,
        "addon_hours": 0,
        "rollover_enabled": False,
        "rollover_cap": 0,
        "rollover_expiry_days": 0,
        "warning_days": [],
    },
}
TIER_ORDER = ["ESSENTIALS", "DIRECTOR", "COO"]

HOUR_PACKS: dict[str, dict[str, object]] = {
    "SMALL": {
        "id": "SMALL",
        "name": "Quick Boost",
        "hours": 5,
        "cost": 35000,
        "price_per_hour": 7000,
        "expiry_days": 60,
        "never_expires": False,
        "popular": False,
        "savings": 0,
    },
    "MEDIUM": {
        "id": "MEDIUM",
        "name": "Power Pack",
        "hours": 10,
        "cost": 65000,
        "price_per_hour": 6500,
        "expiry_days": 90,
        "never_expires": False,
        "popular": True,
        "savings": 5000,
    },
    "LARGE": {
        "id": "LARGE",
        "name": "Mega Pack",
        "hours": 20,
        "cost": 120000,
        "price_per_hour": 6000,
        "expiry_days": 120,
        "never_expires": False,
        "popular": False,
        "savings": 20000,
    },
    "PREMIUM": {
        "id": "PREMIUM",
        "name": "Never Expire Pack",
        "hours": 10,
        "cost": 85000,
        "price_per_hour": 8500,
        "expiry_days": 0,
        "never_expires": True,
        "popular": False,
        "savings": 0,
    },
}

URGENCY_FEES: dict[str, dict[str, object]] = {
    "LOW": {"fee": 0, "days": "3-5 days", "label": "Low Priority"},
    "NORMAL": {"fee": 0, "days": "2-3 days", "label": "Normal"},
    "HIGH": {"fee": 0, "days": "1 day", "label": "High Priority"},
    "URGENT": {"fee": 5000, "days": "Same day", "label": "Urgent (+$50)"},
    "EMERGENCY": {"fee": 10000, "days": "Immediate", "label": "Emergency (+$100)"},
}

ON_DEMAND_SETTINGS = {
    "hourly_rate": 7500,
    "default_daily_limit": 3,
    "min_daily_limit": 1,
    "max_daily_limit": 10,
    "urgent_requests_per_week": 2,
    "require_approval_over": 20000,
}

GRACE_PERIOD = {
    "first_time_overage_allowed": True,
    "max_first_time_overage": 1.0,
}

EXPIRY_NOTICE_DAYS = 30
EXPIRY_WARNING_DAYS = 7
CLIENT_APPROVAL_HOURS_THRESHOLD = 2

LEAD_PRIORITY_CATEGORIES = [
    "Healthcare",
    "Mental Health",
    "Education",
    "Community Development",
    "Social Services",
    "Family Services",
    "Youth Development",
    "Substance Abuse",
    "Housing",
    "Food Security",
]
LEAD_TARGET_STATES = ["KY", "IN", "OH", "TN", "WV"]
LEAD_HOME_CITY = "Louisville"
LEAD_HOME_STATE = "KY"

TRUTHY_VALUES = {"1", "true", "yes", "on", "y"}


class WorkflowError(RuntimeError):
    """Raised when a business rule rejects an operation; the message is user-facing."""


class BillingError(WorkflowError):
    """Raised when a billing or hours rule rejects an operation."""


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def add_months(value: datetime, months: int = 1) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    days_in_month = [31, 29 if _is_leap_year(year) else 28, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31]
    return value.replace(year=year, month=month, day=min(value.day, days_in_month[month - 1]))


def _is_leap_year(year: int) -> bool:
    return year % 4 == 0 and (year % 100 != 0 or year % 400 == 0)


def days_until(moment: datetime | None, now: datetime | None = None) -> int | None:
    if moment is None:
        return None
    now = now or utcnow()
    return math.ceil((as_utc(moment) - now).total_seconds() / 86400)


def slugify_segment(value: str) -> str:
    if not value:
        return ""
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def generate_unique_org_slug(name: str) -> str:
    base_slug = slugify_segment(name) or f"org-{secrets.token_hex(3)}"
    slug = base_slug
    suffix = 2
    while Organization.query.filter_by(slug=slug).first() is not None:
        slug = f"{base_slug}-{suffix}"
        suffix += 1
    return slug


def is_truthy(value: str | bool | None) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY_VALUES


def wants_json_response() -> bool:
    """Determine whether the current request expects a JSON response."""

    if request.is_json:
        return True

    requested_with = request.headers.get("X-Requested-With", "").lower()
    if requested_with == "xmlhttprequest":
        return True

    accept_mimetypes = request.accept_mimetypes
    if accept_mimetypes:
        best = accept_mimetypes.best
        if best == "application/json":
            return True
        if (
            accept_mimetypes["application/json"]
            and accept_mimetypes["application/json"]
            >= accept_mimetypes["text/html"]
        ):
            return True

    return False


def request_payload() -> dict[str, object]:
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        return payload
    return request.form.to_dict()


def _coerce_int(value: object | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value:  # NaN check
            return None
        return int(value)
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        try:
            return int(cleaned)
        except ValueError:
            try:
                return int(float(cleaned))
            except (TypeError, ValueError):
                return None
    return None


def _coerce_float(value: object | None) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value != value:
            return None
        return float(value)
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def parse_amount_cents(raw: object | None) -> int | None:
    """Parse a dollar amount such as ``"1,250.50"`` into integer cents."""

    if raw is None:
        return None
    cleaned = str(raw).replace("$", "").replace(",", "").strip()
    if not cleaned:
        return None
    try:
        amount_decimal = Decimal(cleaned).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError):
        return None
    return int(amount_decimal * 100)


def parse_iso_date(raw: object | None) -> date | None:
    if not raw:
        return None
    try:
        return datetime.strptime(str(raw).strip()[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def format_cents(value: int | float | Decimal | None) -> str:
    if value is None:
        return "$0.00"
    dollars = Decimal(int(value)) / Decimal(100)
    return f"${dollars:,.2f}"


def get_tier(tier_id: str | None) -> dict[str, object] | None:
    if not tier_id:
        return None
    return NONPROFIT_TIERS.get(str(tier_id).upper())


def get_hour_pack(pack_id: str | None) -> dict[str, object] | None:
    if not pack_id:
        return None
    return HOUR_PACKS.get(str(pack_id).upper())


def has_unlimited_hours(tier_id: str | None) -> bool:
    tier = get_tier(tier_id)
    return bool(tier) and tier["support_hours_included"] == UNLIMITED


def has_unlimited_subscriptions(tier_id: str | None) -> bool:
    tier = get_tier(tier_id)
    return bool(tier) and tier["max_subscriptions"] == UNLIMITED


def _addons_needed(tier: dict[str, object], addon_count: int) -> int:
    included = tier["subscriptions_included"]
    if included == UNLIMITED:
        return 0
    return max(0, addon_count - int(included))


def calculate_monthly_cost(tier_id: str, addon_count: int) -> int:
    tier = get_tier(tier_id)
    if not tier:
        return 0
    return int(tier["monthly_price"]) + _addons_needed(tier, addon_count) * int(
        tier["addon_cost"]
    )


def calculate_total_hours(tier_id: str, addon_count: int) -> int:
    tier = get_tier(tier_id)
    if not tier:
        return 0
    if tier["support_hours_included"] == UNLIMITED:
        return UNLIMITED
    return int(tier["support_hours_included"]) + _addons_needed(
        tier, addon_count
    ) * int(tier["addon_hours"])


def format_price(cents: int) -> str:
    return f"${round(cents / 100):,}"


def format_hours(hours: float | int) -> str:
    if hours == UNLIMITED:
        return "Unlimited"
    if hours == 0:
        return "0 hours"
    if hours == 1:
        return "1 hour"
    if float(hours).is_integer():
        return f"{int(hours)} hours"
    return f"{hours:g} hours"


def get_recommended_tier(avg_monthly_hours: float, subscription_count: int) -> str:
    if avg_monthly_hours > 10 or subscription_count > 6:
        return "COO"
    if avg_monthly_hours > 4 or subscription_count > 3:
        return "DIRECTOR"
    return "ESSENTIALS"


def calculate_upgrade_savings(
    current_tier: str,
    avg_monthly_overage_hours: float,
    avg_monthly_addon_cost: int,
) -> dict[str, object] | None:
    current = get_tier(current_tier)
    if not current:
        return None

    current_cost = (
        int(current["monthly_price"])
        + avg_monthly_addon_cost
        + avg_monthly_overage_hours * ON_DEMAND_SETTINGS["hourly_rate"]
    )
    current_index = TIER_ORDER.index(current["id"])
    for tier_id in TIER_ORDER[current_index + 1 :]:
        higher = NONPROFIT_TIERS[tier_id]
        if higher["monthly_price"] < current_cost:
            return {
                "recommended_tier": tier_id,
                "monthly_savings": int(current_cost - int(higher["monthly_price"])),
            }
    return None


def calculate_lead_score(lead: "Lead") -> int:
    """Score a prospective client from 0 to 100.

    Higher scores mark better opportunities: organisations without a solid
    website, with budget, in a priority category and close to the home market.
    Converted leads always score 0.
    """

    if lead.converted_at:
        return 0

    score = 0

    if not lead.has_website:
        score += 30
    else:
        score += {"POOR": 25, "FAIR": 15, "GOOD": 5, "EXCELLENT": 0}.get(
            (lead.website_quality or "").upper(), 20
        )

    revenue = lead.annual_revenue
    if revenue:
        if revenue >= 1_000_000:
            score += 25
        elif revenue >= 500_000:
            score += 20
        elif revenue >= 100_000:
            score += 15
        elif revenue >= 50_000:
            score += 10
        else:
            score += 5
    else:
        score += 12

    category = (lead.category or "").strip().lower()
    if category:
        is_priority = any(
            candidate.lower() in category or category in candidate.lower()
            for candidate in LEAD_PRIORITY_CATEGORIES
        )
        score += 20 if is_priority else 10
    else:
        score += 10

    city_match = (lead.city or "").strip().lower() == LEAD_HOME_CITY.lower()
    state = (lead.state or "").strip().upper()
    if city_match and state == LEAD_HOME_STATE:
        score += 15
    elif state == LEAD_HOME_STATE:
        score += 12
    elif state in LEAD_TARGET_STATES:
        score += 7
    else:
        score += 3

    employees = lead.employee_count
    if employees:
        if employees >= 50:
            score += 10
        elif employees >= 20:
            score += 7
        elif employees >= 10:
            score += 5
        else:
            score += 3
    else:
        score += 5

    if lead.email or lead.phone:
        score += 5

    if lead.emails_sent and lead.emails_sent > 0:
        score -= 10

    return min(100, max(0, score))


def get_score_label(score: int) -> str:
    if score >= 90:
        return "Hot Lead"
    if score >= 80:
        return "Warm Lead"
    if score >= 70:
        return "Good Lead"
    if score >= 60:
        return "Warm Lead"
    if score >= 40:
        return "Cool Lead"
    return "Cold Lead"


def stripe_active(app: Flask | None = None) -> bool:
    app = app or current_app
    if app is None:
        return False
    return bool(app.config.get("STRIPE_SECRET_KEY"))


def init_stripe(app: Flask) -> None:
    secret_key = app.config.get("STRIPE_SECRET_KEY")
    if secret_key:
        stripe.api_key = secret_key
    else:
        stripe.api_key = None


def describe_stripe_error(error: StripeError) -> str:
    message = getattr(error, "user_message", None) or getattr(error, "message", None)
    if message:
        return message
    return "An unexpected payment processor error occurred."


def _metadata_dict(stripe_object: object) -> dict[str, str]:
    metadata = getattr(stripe_object, "metadata", None) or {}
    try:
        return dict(metadata)
    except TypeError:
        try:
            return dict(metadata.to_dict())  # type: ignore[attr-defined]
        except AttributeError:
            return {}


def _stripe_id(value: object | None) -> str | None:
    """Return the id of an expandable Stripe field that may be a string or object."""

    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return getattr(value, "id", None)


def _stripe_value(stripe_object: object, key: str, default: object = None) -> object:
    """Read a field from a Stripe object or a plain namespace.

    Stripe objects are dicts, so keys such as ``items`` must be read by
    key rather than attribute access.
    """

    if stripe_object is None:
        return default
    if isinstance(stripe_object, dict):
        return stripe_object.get(key, default)
    return getattr(stripe_object, key, default)


def _from_stripe_timestamp(value: object | None) -> datetime | None:
    seconds = _coerce_int(value)
    if not seconds:
        return None
    return datetime.fromtimestamp(seconds, tz=UTC)


def site_url(path: str) -> str:
    base = (current_app.config.get("SITE_URL") or request.host_url).rstrip("/")
    return f"{base}{path}"


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True)
    password_hash = db.Column(db.String(255))
    role = db.Column(db.String(20), nullable=False, default="CLIENT")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    last_login_at = db.Column(db.DateTime(timezone=True))

    memberships = db.relationship(
        "OrganizationMember", back_populates="user", cascade="all, delete-orphan"
    )
    assigned_tasks = db.relationship(
        "Task", back_populates="assigned_to", foreign_keys="Task.assigned_to_id"
    )

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def organizations(self) -> list["Organization"]:
        return [membership.organization for membership in self.memberships]

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<User {self.email} ({self.role})>"


class Organization(db.Model):
    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(255), nullable=False, unique=True)
    email = db.Column(db.String(255))
    phone = db.Column(db.String(50))
    website = db.Column(db.String(255))
    address = db.Column(db.String(255))
    city = db.Column(db.String(120))
    state = db.Column(db.String(50))
    zip_code = db.Column(db.String(20))
    stripe_customer_id = db.Column(db.String(64), unique=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    members = db.relationship(
        "OrganizationMember",
        back_populates="organization",
        cascade="all, delete-orphan",
    )
    projects = db.relationship("Project", back_populates="organization")
    invoices = db.relationship("Invoice", back_populates="organization")
    leads = db.relationship("Lead", back_populates="organization")

    def owner(self) -> User | None:
        for role in ("OWNER", "ADMIN"):
            for membership in self.members:
                if membership.role == role and membership.user is not None:
                    return membership.user
        return None

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Organization {self.slug}>"


class OrganizationMember(db.Model):
    __tablename__ = "organization_members"
    __table_args__ = (
        db.UniqueConstraint(
            "organization_id", "user_id", name="uq_organization_member"
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id"), nullable=False
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="MEMBER")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    organization = db.relationship("Organization", back_populates="members")
    user = db.relationship("User", back_populates="memberships")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<OrganizationMember org={self.organization_id} user={self.user_id}>"


class Lead(db.Model):
    __tablename__ = "leads"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(50))
    company = db.Column(db.String(255))
    message = db.Column(db.Text)
    source = db.Column(db.String(120), nullable=False, default="Website")
    status = db.Column(db.String(20), nullable=False, default="NEW")
    service_type = db.Column(db.String(120))
    timeline = db.Column(db.String(120))
    budget = db.Column(db.String(120))
    notes = db.Column(db.Text)
    website = db.Column(db.String(255))
    has_website = db.Column(db.Boolean, nullable=False, default=False)
    website_quality = db.Column(db.String(20))
    annual_revenue = db.Column(db.Integer)
    category = db.Column(db.String(120))
    city = db.Column(db.String(120))
    state = db.Column(db.String(50))
    employee_count = db.Column(db.Integer)
    emails_sent = db.Column(db.Integer, nullable=False, default=0)
    lead_score = db.Column(db.Integer, nullable=False, default=0)
    details = db.Column(db.JSON)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"))
    converted_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    organization = db.relationship("Organization", back_populates="leads")
    project = db.relationship("Project", back_populates="lead", uselist=False)

    @property
    def score_label(self) -> str:
        return get_score_label(self.lead_score or 0)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Lead {self.email} ({self.status})>"


class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default="LEAD")
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id"), nullable=False
    )
    lead_id = db.Column(db.Integer, db.ForeignKey("leads.id"), unique=True)
    budget_cents = db.Column(db.Integer)
    start_date = db.Column(db.Date)
    end_date = db.Column(db.Date)
    stripe_subscription_id = db.Column(db.String(64))
    maintenance_status = db.Column(db.String(20), nullable=False, default="INACTIVE")
    next_billing_date = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    organization = db.relationship("Organization", back_populates="projects")
    lead = db.relationship("Lead", back_populates="project")
    tasks = db.relationship(
        "Task", back_populates="project", cascade="all, delete-orphan"
    )
    change_requests = db.relationship(
        "ChangeRequest", back_populates="project", cascade="all, delete-orphan"
    )
    invoices = db.relationship("Invoice", back_populates="project")
    maintenance_plan = db.relationship(
        "MaintenancePlan",
        back_populates="project",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Project {self.id} {self.name!r}>"


class Task(db.Model):
    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default="TODO")
    priority = db.Column(db.String(20), nullable=False, default="MEDIUM")
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"))
    change_request_id = db.Column(
        db.Integer, db.ForeignKey("change_requests.id"), unique=True
    )
    assigned_to_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    assigned_to_role = db.Column(db.String(20))
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    estimated_hours = db.Column(db.Float)
    actual_hours = db.Column(db.Float)
    due_date = db.Column(db.Date)
    submitted_at = db.Column(db.DateTime(timezone=True))
    submission_notes = db.Column(db.Text)
    approved_at = db.Column(db.DateTime(timezone=True))
    completed_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    project = db.relationship("Project", back_populates="tasks")
    change_request = db.relationship("ChangeRequest", back_populates="task")
    assigned_to = db.relationship(
        "User", back_populates="assigned_tasks", foreign_keys=[assigned_to_id]
    )
    created_by = db.relationship("User", foreign_keys=[created_by_id])

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Task {self.id} {self.status}>"


class ChangeRequest(db.Model):
    __tablename__ = "change_requests"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False)
    maintenance_plan_id = db.Column(
        db.Integer, db.ForeignKey("maintenance_plans.id")
    )
    requested_by_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(20), nullable=False, default="OTHER")
    priority = db.Column(db.String(20), nullable=False, default="NORMAL")
    status = db.Column(db.String(20), nullable=False, default="PENDING")
    estimated_hours = db.Column(db.Float)
    actual_hours = db.Column(db.Float)
    hours_deducted = db.Column(db.Float, nullable=False, default=0.0)
    hours_source = db.Column(db.String(20))
    urgency_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    is_overage = db.Column(db.Boolean, nullable=False, default=False)
    overage_amount_cents = db.Column(db.Integer)
    requires_client_approval = db.Column(db.Boolean, nullable=False, default=False)
    client_approved_at = db.Column(db.DateTime(timezone=True))
    flagged_for_review = db.Column(db.Boolean, nullable=False, default=False)
    admin_notes = db.Column(db.Text)
    completed_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    project = db.relationship("Project", back_populates="change_requests")
    maintenance_plan = db.relationship(
        "MaintenancePlan", back_populates="change_requests"
    )
    requested_by = db.relationship("User")
    task = db.relationship("Task", back_populates="change_request", uselist=False)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<ChangeRequest {self.id} {self.status}>"


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(40), nullable=False, unique=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id"), nullable=False
    )
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"))
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default="DRAFT")
    currency = db.Column(db.String(3), nullable=False, default=STRIPE_DEFAULT_CURRENCY)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    due_date = db.Column(db.Date)
    sent_at = db.Column(db.DateTime(timezone=True))
    paid_at = db.Column(db.DateTime(timezone=True))
    receipt_sent_at = db.Column(db.DateTime(timezone=True))
    stripe_invoice_id = db.Column(db.String(64), unique=True)
    stripe_checkout_session_id = db.Column(db.String(255))
    hosted_invoice_url = db.Column(db.String(500))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    organization = db.relationship("Organization", back_populates="invoices")
    project = db.relationship("Project", back_populates="invoices")
    items = db.relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.id",
    )
    payments = db.relationship(
        "Payment", back_populates="invoice", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Invoice {self.number} ({self.status})>"


class InvoiceItem(db.Model):
    __tablename__ = "invoice_items"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    rate_cents = db.Column(db.Integer, nullable=False, default=0)
    amount_cents = db.Column(db.Integer, nullable=False, default=0)

    invoice = db.relationship("Invoice", back_populates="items")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<InvoiceItem {self.description!r} x{self.quantity}>"


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default=STRIPE_DEFAULT_CURRENCY)
    status = db.Column(db.String(20), nullable=False, default="COMPLETED")
    method = db.Column(db.String(40), nullable=False, default="stripe")
    stripe_charge_id = db.Column(db.String(64), unique=True)
    stripe_payment_id = db.Column(db.String(64))
    processed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    invoice = db.relationship("Invoice", back_populates="payments")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Payment {self.id} {self.amount_cents}>"


class MaintenancePlan(db.Model):
    __tablename__ = "maintenance_plans"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id"), nullable=False, unique=True
    )
    tier = db.Column(db.String(20), nullable=False, default="ESSENTIALS")
    billing_cycle = db.Column(db.String(20), nullable=False, default="MONTHLY")
    status = db.Column(db.String(20), nullable=False, default="PENDING")
    monthly_price_cents = db.Column(db.Integer, nullable=False, default=0)
    support_hours_used = db.Column(db.Float, nullable=False, default=0.0)
    change_requests_used = db.Column(db.Integer, nullable=False, default=0)
    urgent_requests_used = db.Column(db.Integer, nullable=False, default=0)
    requests_today = db.Column(db.Integer, nullable=False, default=0)
    last_request_date = db.Column(db.DateTime(timezone=True))
    daily_request_limit = db.Column(
        db.Integer,
        nullable=False,
        default=ON_DEMAND_SETTINGS["default_daily_limit"],
    )
    on_demand_enabled = db.Column(db.Boolean, nullable=False, default=False)
    grace_period_used = db.Column(db.Boolean, nullable=False, default=False)
    rollover_enabled = db.Column(db.Boolean, nullable=False, default=True)
    rollover_cap = db.Column(db.Float)
    rollover_hours = db.Column(db.Float, nullable=False, default=0.0)
    stripe_subscription_id = db.Column(db.String(64), unique=True)
    stripe_checkout_session_id = db.Column(db.String(255))
    current_period_start = db.Column(db.DateTime(timezone=True))
    current_period_end = db.Column(db.DateTime(timezone=True))
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    cancelled_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    project = db.relationship("Project", back_populates="maintenance_plan")
    logs = db.relationship(
        "MaintenanceLog",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="MaintenanceLog.performed_at.desc()",
    )
    hour_packs = db.relationship(
        "HourPack", back_populates="plan", cascade="all, delete-orphan"
    )
    rollovers = db.relationship(
        "RolloverHours", back_populates="plan", cascade="all, delete-orphan"
    )
    change_requests = db.relationship(
        "ChangeRequest", back_populates="maintenance_plan"
    )
    notifications = db.relationship(
        "UsageNotification", back_populates="plan", cascade="all, delete-orphan"
    )

    @property
    def tier_config(self) -> dict[str, object]:
        return get_tier(self.tier) or NONPROFIT_TIERS["ESSENTIALS"]

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<MaintenancePlan {self.id} {self.tier} ({self.status})>"


class MaintenanceLog(db.Model):
    __tablename__ = "maintenance_logs"

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(
        db.Integer, db.ForeignKey("maintenance_plans.id"), nullable=False
    )
    hours_spent = db.Column(db.Float, nullable=False, default=0.0)
    description = db.Column(db.Text, nullable=False)
    performed_by = db.Column(db.String(255))
    billable = db.Column(db.Boolean, nullable=False, default=True)
    overage = db.Column(db.Boolean, nullable=False, default=False)
    performed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    plan = db.relationship("MaintenancePlan", back_populates="logs")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<MaintenanceLog {self.id} {self.hours_spent}h>"


class HourPack(db.Model):
    __tablename__ = "hour_packs"

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(
        db.Integer, db.ForeignKey("maintenance_plans.id"), nullable=False
    )
    pack_type = db.Column(db.String(20), nullable=False)
    hours = db.Column(db.Float, nullable=False)
    hours_remaining = db.Column(db.Float, nullable=False)
    cost_cents = db.Column(db.Integer, nullable=False, default=0)
    purchased_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime(timezone=True))
    never_expires = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    used_at = db.Column(db.DateTime(timezone=True))
    stripe_payment_id = db.Column(db.String(255), unique=True)
    stripe_session_id = db.Column(db.String(255))

    plan = db.relationship("MaintenancePlan", back_populates="hour_packs")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<HourPack {self.pack_type} {self.hours_remaining}/{self.hours}h>"


class RolloverHours(db.Model):
    __tablename__ = "rollover_hours"

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(
        db.Integer, db.ForeignKey("maintenance_plans.id"), nullable=False
    )
    hours = db.Column(db.Float, nullable=False)
    hours_remaining = db.Column(db.Float, nullable=False)
    source_month = db.Column(db.String(7), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    is_expired = db.Column(db.Boolean, nullable=False, default=False)
    used_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    plan = db.relationship("MaintenancePlan", back_populates="rollovers")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<RolloverHours {self.source_month} {self.hours_remaining}h>"


class UsageNotification(db.Model):
    __tablename__ = "usage_notifications"
    __table_args__ = (
        db.UniqueConstraint(
            "plan_id", "warning_type", "period_key", name="uq_usage_notification"
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(
        db.Integer, db.ForeignKey("maintenance_plans.id"), nullable=False
    )
    warning_type = db.Column(db.String(40), nullable=False)
    period_key = db.Column(db.String(40), nullable=False)
    hours = db.Column(db.Float)
    sent_to = db.Column(db.String(255))
    sent_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    plan = db.relationship("MaintenancePlan", back_populates="notifications")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<UsageNotification {self.warning_type} {self.period_key}>"


class ActivityLog(db.Model):
    __tablename__ = "activity_logs"

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(60), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    details = db.Column(db.JSON)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    user = db.relationship("User")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<ActivityLog {self.type}>"


class StripeWebhookEvent(db.Model):
    __tablename__ = "stripe_webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    stripe_event_id = db.Column(db.String(255), nullable=False, unique=True)
    event_type = db.Column(db.String(120), nullable=False)
    handled = db.Column(db.Boolean, nullable=False, default=False)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<StripeWebhookEvent {self.stripe_event_id}>"


class StripeConfig(db.Model):
    __tablename__ = "stripe_config"

    id = db.Column(db.Integer, primary_key=True)
    secret_key = db.Column(db.String(255))
    publishable_key = db.Column(db.String(255))
    webhook_secret = db.Column(db.String(255))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return "<StripeConfig>"


class NotificationConfig(db.Model):
    __tablename__ = "notification_config"

    id = db.Column(db.Integer, primary_key=True)
    smtp_host = db.Column(db.String(255), nullable=False, default="smtp.office365.com")
    smtp_port = db.Column(db.Integer, nullable=False, default=587)
    use_tls = db.Column(db.Boolean, nullable=False, default=True)
    from_email = db.Column(db.String(255))
    from_name = db.Column(db.String(255))
    reply_to_email = db.Column(db.String(255))
    smtp_username = db.Column(db.String(255))
    smtp_password = db.Column(db.String(255))
    notify_new_leads = db.Column(db.Boolean, nullable=False, default=True)
    notify_change_requests = db.Column(db.Boolean, nullable=False, default=True)
    notify_billing = db.Column(db.Boolean, nullable=False, default=True)
    notify_usage_warnings = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def smtp_ready(self) -> bool:
        username = (self.smtp_username or "").strip()
        password = (self.smtp_password or "").strip()
        sender = (self.from_email or username or "").strip()
        return bool(username and password and sender)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return "<NotificationConfig>"


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)

    instance_path = Path(app.instance_path)
    db_path = instance_path / "agency.db"
    os.makedirs(instance_path, exist_ok=True)

    secret_key = os.environ.get("SECRET_KEY") or secrets.token_hex(16)

    default_config = {
        "SECRET_KEY": secret_key,
        "SQLALCHEMY_DATABASE_URI": os.environ.get(
            "DATABASE_URL", f"sqlite:///{db_path}"
        ),
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "ADMIN_NAME": os.environ.get("ADMIN_NAME", "Administrator"),
        "ADMIN_EMAIL": os.environ.get("ADMIN_EMAIL"),
        "ADMIN_PASSWORD": os.environ.get("ADMIN_PASSWORD"),
        "CONTACT_EMAIL": os.environ.get("CONTACT_EMAIL", "hello@seezeestudios.com"),
        "SITE_NAME": os.environ.get("SITE_NAME", "SeeZee Studios"),
        "SITE_URL": os.environ.get("SITE_URL"),
        "STRIPE_SECRET_KEY": os.environ.get("STRIPE_SECRET_KEY"),
        "STRIPE_PUBLISHABLE_KEY": os.environ.get("STRIPE_PUBLISHABLE_KEY"),
        "STRIPE_WEBHOOK_SECRET": os.environ.get("STRIPE_WEBHOOK_SECRET"),
        "STRIPE_WEBHOOK_ALLOW_UNSIGNED": is_truthy(
            os.environ.get("STRIPE_WEBHOOK_ALLOW_UNSIGNED")
        ),
        "DASHBOARD_OVERVIEW_CACHE_SECONDS": float(
            os.environ.get(
                "DASHBOARD_OVERVIEW_CACHE_SECONDS",
                DASHBOARD_OVERVIEW_CACHE_SECONDS_DEFAULT,
            )
        ),
        "NOTIFICATION_EMAIL_SENDER": None,
    }
    for tier_id in TIER_ORDER:
        default_config[f"STRIPE_PRICE_{tier_id}"] = os.environ.get(
            f"STRIPE_PRICE_{tier_id}"
        )
        default_config[f"STRIPE_PRICE_{tier_id}_ANNUAL"] = os.environ.get(
            f"STRIPE_PRICE_{tier_id}_ANNUAL"
        )

    app.config.update(default_config)

    if test_config:
        app.config.update(test_config)

    db.init_app(app)
    init_stripe(app)

    register_routes(app)
    register_cli(app)

    with app.app_context():
        db.create_all()
        apply_stripe_config_from_database(app)
        ensure_default_admin_user()
        ensure_notification_configuration()

    return app


def ensure_default_admin_user() -> None:
    if User.query.filter(User.role.in_(EXECUTIVE_ROLES)).count() > 0:
        return

    email = (current_app.config.get("ADMIN_EMAIL") or "").strip().lower()
    password = current_app.config.get("ADMIN_PASSWORD")
    name = (current_app.config.get("ADMIN_NAME") or "").strip() or "Administrator"

    if not email or not password:
        current_app.logger.warning(
            "No executive users exist and ADMIN_EMAIL/ADMIN_PASSWORD were not provided."
        )
        return

    existing = User.query.filter_by(email=email).first()
    if existing:
        existing.role = "CEO"
        existing.is_active = True
        db.session.commit()
        return

    admin = User(name=name, email=email, role="CEO")
    admin.set_password(password)
    db.session.add(admin)
    db.session.commit()


def ensure_notification_configuration() -> NotificationConfig:
    config = NotificationConfig.query.first()
    if config:
        return config

    config = NotificationConfig()
    db.session.add(config)
    db.session.commit()
    return config


def apply_stripe_config_from_database(app: Flask) -> StripeConfig:
    config = StripeConfig.query.first()

    def _clean(value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    if config is None:
        config = StripeConfig(
            secret_key=_clean(app.config.get("STRIPE_SECRET_KEY")),
            publishable_key=_clean(app.config.get("STRIPE_PUBLISHABLE_KEY")),
            webhook_secret=_clean(app.config.get("STRIPE_WEBHOOK_SECRET")),
        )
        db.session.add(config)
        db.session.commit()
    else:
        changed = False
        for field in ("secret_key", "publishable_key", "webhook_secret"):
            cleaned = _clean(getattr(config, field))
            if getattr(config, field) != cleaned:
                setattr(config, field, cleaned)
                changed = True
        if changed:
            db.session.commit()

    # Environment values only fill the gaps the stored settings leave.
    app.config["STRIPE_SECRET_KEY"] = config.secret_key or _clean(
        app.config.get("STRIPE_SECRET_KEY")
    )
    app.config["STRIPE_PUBLISHABLE_KEY"] = config.publishable_key or _clean(
        app.config.get("STRIPE_PUBLISHABLE_KEY")
    )
    app.config["STRIPE_WEBHOOK_SECRET"] = config.webhook_secret or _clean(
        app.config.get("STRIPE_WEBHOOK_SECRET")
    )

    init_stripe(app)

    return config


def send_email_via_smtp(app: Flask, recipient: str, subject: str, body: str) -> bool:
    config = NotificationConfig.query.first()
    if not config or not recipient:
        return False

    if not config.smtp_ready():
        return False

    host = (config.smtp_host or "smtp.office365.com").strip()
    try:
        port = int(config.smtp_port or 587)
    except (TypeError, ValueError):
        port = 587

    from_email = (config.from_email or config.smtp_username or "").strip()
    from_name = (config.from_name or app.config.get("SITE_NAME") or "").strip()
    username = (config.smtp_username or "").strip()
    password = config.smtp_password or ""

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = formataddr((from_name, from_email))
    message["To"] = recipient
    message["Date"] = format_datetime(datetime.now(UTC))
    message["Message-ID"] = make_msgid(domain=from_email.split("@")[-1])
    reply_to_email = (config.reply_to_email or "").strip()
    if reply_to_email:
        message["Reply-To"] = reply_to_email
    message.set_content(body)

    try:
        with smtplib.SMTP(host, port, timeout=10) as smtp:
            smtp.ehlo()
            if config.use_tls:
                context = ssl.create_default_context()
                smtp.starttls(context=context)
                smtp.ehlo()
            smtp.login(username, password)
            smtp.send_message(message)
        return True
    except (smtplib.SMTPException, OSError) as exc:  # pragma: no cover - external service dependency
        app.logger.warning("SMTP email delivery failed: %s", exc)
        return False


def should_send_notification(category: str) -> bool:
    config = NotificationConfig.query.first()
    if config is None:
        return True

    normalized = category.lower()
    if normalized == "lead":
        return config.notify_new_leads
    if normalized == "change_request":
        return config.notify_change_requests
    if normalized == "billing":
        return config.notify_billing
    if normalized == "usage":
        return config.notify_usage_warnings
    return True


def dispatch_notification(
    recipient: str | None, subject: str, body: str, category: str = "general"
) -> bool:
    """Deliver a notification email, never raising on delivery problems."""

    if not recipient:
        return False

    app = current_app._get_current_object()
    if not should_send_notification(category):
        return False

    if send_email_via_smtp(app, recipient, subject, body):
        return True

    sender = app.config.get("NOTIFICATION_EMAIL_SENDER")
    if callable(sender):
        try:
            return bool(sender(recipient, subject, body))
        except Exception as exc:  # pragma: no cover - custom transport guard
            app.logger.warning("Custom notification sender failed: %s", exc)
            return False

    app.logger.info("Email transport not configured; skipped %r to %s", subject, recipient)
    return False


def notify_staff(subject: str, body: str, category: str = "general") -> bool:
    return dispatch_notification(
        current_app.config.get("CONTACT_EMAIL"), subject, body, category=category
    )


def log_activity(
    activity_type: str,
    title: str,
    description: str | None = None,
    user: User | None = None,
    details: dict | None = None,
) -> ActivityLog:
    entry = ActivityLog(
        type=activity_type,
        title=title,
        description=description,
        user_id=user.id if user else None,
        details=details,
    )
    db.session.add(entry)
    return entry


def _auth_failure(message: str, status: int, endpoint: str):
    if wants_json_response():
        return jsonify({"error": message}), status
    flash(message, "warning" if status == 401 else "danger")
    if status == 401:
        return redirect(url_for(endpoint, next=request.path))
    return redirect(url_for(endpoint))


def login_required(*roles):
    """Require a logged-in staff member, optionally limited to ``roles``.

    Works bare (``@login_required``) or with roles
    (``@login_required("CEO", "CFO")``).
    """

    if len(roles) == 1 and callable(roles[0]):
        return login_required()(roles[0])

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            user_id = session.get(STAFF_SESSION_KEY)
            if not user_id:
                return _auth_failure("Staff login required.", 401, "login")

            user = db.session.get(User, user_id)
            if not user or not user.is_active or not user.is_staff:
                session.pop(STAFF_SESSION_KEY, None)
                return _auth_failure("Staff session expired.", 401, "login")

            if roles and user.role not in roles:
                return _auth_failure(
                    "You do not have permission to do that.", 403, "dashboard"
                )

            g.current_user = user
            return func(*args, **kwargs)

        return wrapper

    return decorator


def client_login_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        user_id = session.get(PORTAL_SESSION_KEY)
        if not user_id:
            if wants_json_response():
                return jsonify({"error": "Client login required."}), 401
            flash("Please log in to access your account.", "warning")
            return redirect(url_for("portal_login", next=request.path))

        user = db.session.get(User, user_id)
        if not user or not user.is_active:
            session.pop(PORTAL_SESSION_KEY, None)
            if wants_json_response():
                return jsonify({"error": "Client session expired."}), 401
            flash("We couldn't find that account. Please log in again.", "danger")
            return redirect(url_for("portal_login"))

        g.portal_user = user
        return func(user, *args, **kwargs)

    return wrapper


def user_organization_ids(user: User) -> list[int]:
    return [membership.organization_id for membership in user.memberships]


def invalidate_dashboard_overview_cache(app: Flask | None = None) -> None:
    target_app = app
    if target_app is None:
        try:
            target_app = current_app._get_current_object()
        except RuntimeError:
            target_app = None

    if target_app is None:
        return

    target_app.config.pop(DASHBOARD_OVERVIEW_CACHE_KEY, None)


def _usable_rollovers(plan: MaintenancePlan, now: datetime) -> list[RolloverHours]:
    records = [
        record
        for record in plan.rollovers
        if not record.is_expired
        and (record.hours_remaining or 0) > 0
        and as_utc(record.expires_at) > now
    ]
    return sorted(records, key=lambda record: as_utc(record.expires_at))


def _usable_hour_packs(plan: MaintenancePlan, now: datetime) -> list[HourPack]:
    packs = [
        pack
        for pack in plan.hour_packs
        if pack.is_active
        and (pack.hours_remaining or 0) > 0
        and (pack.never_expires or pack.expires_at is None or as_utc(pack.expires_at) > now)
    ]
    expiring = sorted(
        (pack for pack in packs if not pack.never_expires and pack.expires_at),
        key=lambda pack: as_utc(pack.expires_at),
    )
    lasting = sorted(
        (pack for pack in packs if pack.never_expires or not pack.expires_at),
        key=lambda pack: as_utc(pack.purchased_at) or now,
    )
    return expiring + lasting


def get_hours_balance(plan: MaintenancePlan) -> dict[str, object]:
    """Summarise the hours a maintenance plan can still draw on this period.

    Unlimited tiers report ``-1`` for every allowance. Rollover records and hour
    packs past their expiry date never count towards the available total.
    """

    tier = plan.tier_config
    now = utcnow()
    is_unlimited = tier["support_hours_included"] == UNLIMITED
    monthly_used = float(plan.support_hours_used or 0)

    rollovers = _usable_rollovers(plan, now)
    packs = _usable_hour_packs(plan, now)

    rollover_total = sum(record.hours_remaining for record in rollovers)
    rollover_expiring_soon = []
    for record in rollovers:
        remaining_days = days_until(record.expires_at, now)
        if remaining_days is not None and remaining_days <= EXPIRY_NOTICE_DAYS:
            rollover_expiring_soon.append(
                {
                    "id": record.id,
                    "hours": record.hours_remaining,
                    "expires_at": as_utc(record.expires_at),
                    "days_until_expiry": remaining_days,
                }
            )

    pack_total = sum(pack.hours_remaining for pack in packs)
    pack_expiring_soon = []
    for pack in packs:
        if pack.never_expires or pack.expires_at is None:
            continue
        remaining_days = days_until(pack.expires_at, now)
        if remaining_days is not None and remaining_days <= EXPIRY_NOTICE_DAYS:
            pack_expiring_soon.append(
                {
                    "id": pack.id,
                    "pack_type": pack.pack_type,
                    "hours": pack.hours_remaining,
                    "expires_at": as_utc(pack.expires_at),
                    "days_until_expiry": remaining_days,
                }
            )

    change_requests_included = int(tier["change_requests_included"])
    change_requests_used = plan.change_requests_used or 0
    if change_requests_included == UNLIMITED:
        change_requests_remaining = UNLIMITED
    else:
        change_requests_remaining = max(
            0, change_requests_included - change_requests_used
        )

    if is_unlimited:
        return {
            "monthly_included": UNLIMITED,
            "monthly_used": monthly_used,
            "monthly_remaining": UNLIMITED,
            "rollover_total": rollover_total,
            "rollover_expiring_soon": rollover_expiring_soon,
            "pack_hours_total": pack_total,
            "pack_hours_expiring_soon": pack_expiring_soon,
            "total_available": UNLIMITED,
            "is_unlimited": True,
            "at_limit": False,
            "is_overage": False,
            "overage_hours": 0.0,
            "change_requests_included": change_requests_included,
            "change_requests_used": change_requests_used,
            "change_requests_remaining": change_requests_remaining,
        }

    monthly_included = float(tier["support_hours_included"])
    monthly_remaining = max(0.0, monthly_included - monthly_used)
    total_available = monthly_remaining + rollover_total + pack_total
    is_overage = monthly_used > monthly_included

    return {
        "monthly_included": monthly_included,
        "monthly_used": monthly_used,
        "monthly_remaining": monthly_remaining,
        "rollover_total": rollover_total,
        "rollover_expiring_soon": rollover_expiring_soon,
        "pack_hours_total": pack_total,
        "pack_hours_expiring_soon": pack_expiring_soon,
        "total_available": total_available,
        "is_unlimited": False,
        "at_limit": total_available <= 0,
        "is_overage": is_overage,
        "overage_hours": monthly_used - monthly_included if is_overage else 0.0,
        "change_requests_included": change_requests_included,
        "change_requests_used": change_requests_used,
        "change_requests_remaining": change_requests_remaining,
    }


def deduct_hours(
    plan: MaintenancePlan,
    hours: float,
    description: str,
    performed_by: str | None = None,
) -> dict[str, object]:
    """Consume ``hours`` from a plan and log the work.

    Sources are drawn in order: rollover records (soonest expiry first), the
    monthly allowance, expiring hour packs, never-expiring packs and finally
    overage. Overage is only accepted when on-demand billing is on or when the
    one-time grace allowance covers it. The caller commits.
    """

    hours = float(hours)
    now = utcnow()

    if has_unlimited_hours(plan.tier):
        db.session.add(
            MaintenanceLog(
                plan=plan,
                hours_spent=hours,
                description=description,
                performed_by=performed_by,
                billable=True,
                overage=False,
                performed_at=now,
            )
        )
        plan.support_hours_used = (plan.support_hours_used or 0) + hours
        return {
            "success": True,
            "hours_deducted": hours,
            "source": "MONTHLY",
            "source_id": None,
            "is_overage": False,
            "overage_hours": 0.0,
            "remaining_hours": UNLIMITED,
            "error": None,
        }

    remaining = hours
    source = "MONTHLY"
    source_id = None

    for record in _usable_rollovers(plan, now):
        if remaining <= 0:
            break
        portion = min(remaining, record.hours_remaining)
        record.hours_remaining -= portion
        if record.hours_remaining <= 0:
            record.used_at = now
        remaining -= portion
        source = "ROLLOVER"
        source_id = record.id

    monthly_included = float(plan.tier_config["support_hours_included"])
    monthly_remaining = max(0.0, monthly_included - (plan.support_hours_used or 0))
    if remaining > 0 and monthly_remaining > 0:
        portion = min(remaining, monthly_remaining)
        plan.support_hours_used = (plan.support_hours_used or 0) + portion
        remaining -= portion
        source = "MONTHLY"
        source_id = None

    for pack in _usable_hour_packs(plan, now):
        if remaining <= 0:
            break
        portion = min(remaining, pack.hours_remaining)
        pack.hours_remaining -= portion
        if pack.hours_remaining <= 0:
            pack.used_at = now
            pack.is_active = False
        remaining -= portion
        source = "PACK"
        source_id = pack.id

    is_overage = remaining > 0
    overage_hours = remaining
    if is_overage:
        grace_available = (
            GRACE_PERIOD["first_time_overage_allowed"]
            and not plan.grace_period_used
            and overage_hours <= GRACE_PERIOD["max_first_time_overage"]
        )
        if plan.on_demand_enabled or grace_available:
            plan.support_hours_used = (plan.support_hours_used or 0) + overage_hours
            if not plan.on_demand_enabled:
                plan.grace_period_used = True
            remaining = 0.0
            source = "OVERAGE"
            source_id = None

    db.session.add(
        MaintenanceLog(
            plan=plan,
            hours_spent=hours,
            description=description,
            performed_by=performed_by,
            billable=True,
            overage=is_overage,
            performed_at=now,
        )
    )
    db.session.flush()

    balance = get_hours_balance(plan)
    return {
        "success": remaining <= 0,
        "hours_deducted": hours - remaining,
        "source": source,
        "source_id": source_id,
        "is_overage": is_overage,
        "overage_hours": overage_hours if is_overage else 0.0,
        "remaining_hours": balance["total_available"],
        "error": "Insufficient hours available" if remaining > 0 else None,
    }


def process_monthly_rollover(plan: MaintenancePlan) -> dict[str, float]:
    tier = plan.tier_config
    if not plan.rollover_enabled or not tier["rollover_enabled"]:
        return {"hours_rolled_over": 0.0, "hours_expired": 0.0}
    if tier["support_hours_included"] == UNLIMITED:
        return {"hours_rolled_over": 0.0, "hours_expired": 0.0}

    now = utcnow()
    hours_expired = 0.0
    current_rollover = 0.0
    for record in plan.rollovers:
        if record.is_expired:
            continue
        if as_utc(record.expires_at) <= now:
            hours_expired += record.hours_remaining or 0
            record.hours_remaining = 0.0
            record.is_expired = True
        else:
            current_rollover += record.hours_remaining or 0

    unused_hours = max(
        0.0, float(tier["support_hours_included"]) - (plan.support_hours_used or 0)
    )
    cap = plan.rollover_cap if plan.rollover_cap is not None else float(tier["rollover_cap"])
    capacity = max(0.0, cap - current_rollover)
    hours_to_roll = min(unused_hours, capacity)

    if hours_to_roll > 0:
        db.session.add(
            RolloverHours(
                plan=plan,
                hours=hours_to_roll,
                hours_remaining=hours_to_roll,
                source_month=now.strftime("%Y-%m"),
                expires_at=now + timedelta(days=int(tier["rollover_expiry_days"])),
            )
        )

    plan.rollover_hours = current_rollover + hours_to_roll
    return {"hours_rolled_over": hours_to_roll, "hours_expired": hours_expired}


def reset_billing_period(plan: MaintenancePlan) -> None:
    now = utcnow()
    plan.support_hours_used = 0.0
    plan.change_requests_used = 0
    plan.urgent_requests_used = 0
    plan.requests_today = 0
    plan.current_period_start = now
    plan.current_period_end = add_months(now, 1)


def close_billing_period(plan: MaintenancePlan) -> dict[str, float]:
    result = process_monthly_rollover(plan)
    reset_billing_period(plan)
    return result


def can_submit_change_request(plan: MaintenancePlan) -> dict[str, object]:
    balance = get_hours_balance(plan)
    result: dict[str, object] = {
        "allowed": True,
        "reason": None,
        "hours_remaining": balance["total_available"],
        "requests_remaining": balance["change_requests_remaining"],
        "requires_approval": False,
        "requires_payment": False,
    }

    if balance["is_unlimited"]:
        result["hours_remaining"] = UNLIMITED
        result["requests_remaining"] = UNLIMITED
        return result

    if balance["change_requests_remaining"] != UNLIMITED and (
        balance["change_requests_remaining"] <= 0 and not plan.on_demand_enabled
    ):
        result.update(
            allowed=False,
            reason="Monthly change request limit reached",
            requests_remaining=0,
            requires_payment=True,
        )
        return result

    if balance["at_limit"] and not plan.on_demand_enabled:
        if not plan.grace_period_used:
            result.update(
                reason="One-time grace period will be used",
                hours_remaining=0,
                requires_approval=True,
            )
            return result
        result.update(
            allowed=False,
            reason="Monthly hours limit reached",
            hours_remaining=0,
            requires_payment=True,
        )
        return result

    if plan.on_demand_enabled:
        today = utcnow().date()
        last_request = as_utc(plan.last_request_date)
        requests_today = (
            plan.requests_today if last_request and last_request.date() == today else 0
        )
        if requests_today >= plan.daily_request_limit:
            result.update(
                allowed=False,
                reason=f"Daily request limit ({plan.daily_request_limit}) reached",
            )
            return result

    return result


def increment_daily_requests(plan: MaintenancePlan) -> None:
    now = utcnow()
    last_request = as_utc(plan.last_request_date)
    if last_request and last_request.date() == now.date():
        plan.requests_today = (plan.requests_today or 0) + 1
    else:
        plan.requests_today = 1
    plan.last_request_date = now


def expire_hour_packs() -> int:
    now = utcnow()
    expired = 0
    candidates = HourPack.query.filter(
        HourPack.is_active.is_(True),
        HourPack.never_expires.is_(False),
        HourPack.expires_at.isnot(None),
    ).all()
    for pack in candidates:
        if as_utc(pack.expires_at) <= now:
            pack.is_active = False
            expired += 1
    return expired


def _send_usage_warning(
    plan: MaintenancePlan,
    warning_type: str,
    period_key: str,
    recipient: str,
    subject: str,
    body: str,
    hours: float | None = None,
) -> bool:
    existing = UsageNotification.query.filter_by(
        plan_id=plan.id, warning_type=warning_type, period_key=period_key
    ).first()
    if existing:
        return False

    if not dispatch_notification(recipient, subject, body, category="usage"):
        return False

    db.session.add(
        UsageNotification(
            plan_id=plan.id,
            warning_type=warning_type,
            period_key=period_key,
            hours=hours,
            sent_to=recipient,
        )
    )
    return True


def check_and_send_usage_warnings(plan: MaintenancePlan) -> list[str]:
    """Email the organisation owner about usage thresholds crossed this period.

    Returns the warning types that were sent. Each warning goes out at most once
    per billing period; expiry warnings once per rollover record or hour pack.
    """

    balance = get_hours_balance(plan)
    if balance["is_unlimited"]:
        return []

    project = plan.project
    organization = project.organization if project else None
    owner = organization.owner() if organization else None
    if owner is None or not owner.email:
        return []

    project_name = project.name
    period_start = as_utc(plan.current_period_start) or as_utc(plan.created_at) or utcnow()
    period_key = period_start.strftime("%Y-%m-%d")
    greeting = f"Hello {owner.name},\n\n"
    sent: list[str] = []

    included = balance["monthly_included"]
    usage_ratio = balance["monthly_used"] / included if included > 0 else 0

    if 0.8 <= usage_ratio < 1:
        if _send_usage_warning(
            plan,
            "AT_80_PERCENT",
            period_key,
            owner.email,
            f"You've used 80% of your support hours - {project_name}",
            greeting
            + (
                f"You've used {format_hours(balance['monthly_used'])} of "
                f"{format_hours(included)} this month.\n"
                f"Remaining: {format_hours(balance['total_available'])}."
            ),
        ):
            sent.append("AT_80_PERCENT")

    if 0 < balance["monthly_remaining"] <= 2:
        if _send_usage_warning(
            plan,
            "AT_2_HOURS",
            period_key,
            owner.email,
            f"Only {format_hours(balance['monthly_remaining'])} left - {project_name}",
            greeting
            + (
                f"Only {format_hours(balance['monthly_remaining'])} of monthly "
                "support remain. Consider an hour pack to keep work moving."
            ),
        ):
            sent.append("AT_2_HOURS")

    if balance["at_limit"] and not balance["is_overage"]:
        if _send_usage_warning(
            plan,
            "AT_LIMIT",
            period_key,
            owner.email,
            f"Monthly support hours used - {project_name}",
            greeting
            + (
                "You've used all of your support hours for this period. "
                "New requests will wait until your hours reset unless you buy "
                "an hour pack or enable on-demand billing at "
                f"{format_cents(ON_DEMAND_SETTINGS['hourly_rate'])}/hour."
            ),
        ):
            sent.append("AT_LIMIT")

    if balance["is_overage"] and balance["overage_hours"] > 0:
        overage_cost = round(balance["overage_hours"] * ON_DEMAND_SETTINGS["hourly_rate"])
        cost_line = (
            f"\nOverage cost: {format_cents(overage_cost)}" if plan.on_demand_enabled else ""
        )
        if _send_usage_warning(
            plan,
            "FIRST_OVERAGE",
            period_key,
            owner.email,
            f"Overage hours used - {project_name}",
            greeting
            + (
                "We completed your request with "
                f"{format_hours(balance['overage_hours'])} of overage.{cost_line}"
            ),
        ):
            sent.append("FIRST_OVERAGE")

    for entry in balance["rollover_expiring_soon"]:
        if entry["days_until_expiry"] > EXPIRY_WARNING_DAYS:
            continue
        if _send_usage_warning(
            plan,
            "ROLLOVER_EXPIRING",
            f"rollover-{entry['id']}",
            owner.email,
            f"{format_hours(entry['hours'])} of rollover expiring soon - {project_name}",
            greeting
            + (
                f"{format_hours(entry['hours'])} of rolled-over support expire on "
                f"{entry['expires_at']:%b %d, %Y}."
            ),
            hours=entry["hours"],
        ):
            sent.append("ROLLOVER_EXPIRING")

    for entry in balance["pack_hours_expiring_soon"]:
        if entry["days_until_expiry"] > EXPIRY_WARNING_DAYS:
            continue
        if _send_usage_warning(
            plan,
            "PACK_EXPIRING",
            f"pack-{entry['id']}",
            owner.email,
            f"Hour pack expiring soon - {project_name}",
            greeting
            + (
                f"Your {entry['pack_type'].title()} hour pack has "
                f"{format_hours(entry['hours'])} left and expires on "
                f"{entry['expires_at']:%b %d, %Y}."
            ),
            hours=entry["hours"],
        ):
            sent.append("PACK_EXPIRING")

    return sent


def score_lead(lead: Lead) -> int:
    lead.lead_score = calculate_lead_score(lead)
    return lead.lead_score


def update_lead_status(lead: Lead, status: str) -> Lead:
    normalized = (status or "").strip().upper()
    if normalized not in LEAD_STATUS_OPTIONS:
        raise WorkflowError("Choose a valid lead status.")
    lead.status = normalized
    if normalized == "CONVERTED" and lead.converted_at is None:
        lead.converted_at = utcnow()
    score_lead(lead)
    return lead


def convert_lead_to_project(
    lead: Lead, estimated_budget_cents: int | None = None
) -> Project:
    """Turn a lead into a QUOTED project, creating its organisation if needed."""

    if lead.status == "CONVERTED":
        raise WorkflowError("Lead already converted to project.")
    if Project.query.filter_by(lead_id=lead.id).first() is not None:
        raise WorkflowError("Project already exists for this lead.")

    organization = lead.organization
    if organization is None:
        org_name = lead.company or f"{lead.name}'s Organization"
        organization = Organization(
            name=org_name,
            slug=generate_unique_org_slug(org_name),
            email=lead.email,
            phone=lead.phone,
            city=lead.city,
            state=lead.state,
            website=lead.website,
        )
        db.session.add(organization)
        lead.organization = organization

    project = Project(
        name=lead.company or f"Project for {lead.name}",
        description=lead.message or f"{lead.service_type or 'Web'} project",
        status="QUOTED",
        organization=organization,
        lead=lead,
        budget_cents=estimated_budget_cents,
    )
    db.session.add(project)

    lead.status = "CONVERTED"
    lead.converted_at = utcnow()
    lead.lead_score = 0

    user = User.query.filter_by(email=(lead.email or "").lower()).first()
    if user is not None:
        db.session.flush()
        membership = OrganizationMember.query.filter_by(
            organization_id=organization.id, user_id=user.id
        ).first()
        if membership is None:
            db.session.add(
                OrganizationMember(organization=organization, user=user, role="OWNER")
            )

    log_activity(
        "LEAD_CONVERTED",
        f"Lead converted: {lead.name}",
        f"Project {project.name} created from lead.",
        user=g.get("current_user"),
        details={"lead_id": lead.id},
    )
    return project


def delete_lead(lead: Lead) -> None:
    if lead.status == "CONVERTED" and lead.project is not None:
        raise WorkflowError(
            "Converted leads with a project cannot be deleted. Archive the project first."
        )
    db.session.delete(lead)


def create_task_from_change_request(
    change_request: ChangeRequest, created_by: User | None = None
) -> Task:
    """Create the work item for a change request, or return the existing one."""

    existing = Task.query.filter_by(change_request_id=change_request.id).first()
    if existing is not None:
        return existing

    description = (change_request.description or "").strip()
    first_line = description.splitlines()[0] if description else ""
    title = (first_line or change_request.title or "Change request")[:100]

    task = Task(
        title=title,
        description=description,
        status="TODO",
        priority=CHANGE_REQUEST_TASK_PRIORITY.get(change_request.priority, "MEDIUM"),
        project_id=change_request.project_id,
        change_request=change_request,
        assigned_to_role=CHANGE_REQUEST_TASK_ROLE.get(change_request.category),
        created_by_id=created_by.id if created_by else change_request.requested_by_id,
        estimated_hours=change_request.estimated_hours,
    )
    db.session.add(task)
    return task


def claim_task(task: Task, user: User) -> Task:
    if task.assigned_to_id is not None:
        raise WorkflowError("This task has already been claimed.")
    if task.status == "DONE":
        raise WorkflowError("Completed tasks cannot be claimed.")
    task.assigned_to_id = user.id
    task.status = "IN_PROGRESS"
    return task


def submit_task(
    task: Task, user: User, notes: str | None = None, actual_hours: float | None = None
) -> Task:
    if task.assigned_to_id != user.id:
        raise WorkflowError("Only the assignee can submit this task.")
    if task.status not in {"TODO", "IN_PROGRESS"}:
        raise WorkflowError("Only open tasks can be submitted for review.")
    task.status = "SUBMITTED"
    task.submitted_at = utcnow()
    task.submission_notes = notes or None
    if actual_hours is not None:
        task.actual_hours = actual_hours
    return task


def review_task(task: Task, approve: bool, notes: str | None = None) -> Task:
    if task.status != "SUBMITTED":
        raise WorkflowError("Only submitted tasks can be reviewed.")
    if approve:
        task.status = "AWAITING_PAYOUT"
        task.approved_at = utcnow()
    else:
        task.status = "IN_PROGRESS"
        task.submitted_at = None
        if notes:
            task.submission_notes = f"Changes requested: {notes}"
    return task


def set_task_status(task: Task, status: str) -> Task:
    normalized = (status or "").strip().upper()
    if normalized not in TASK_STATUS_OPTIONS:
        raise WorkflowError("Choose a valid task status.")
    task.status = normalized
    if normalized == "DONE":
        task.completed_at = task.completed_at or utcnow()
    else:
        task.completed_at = None
    return task


def get_task_stats(query=None) -> dict[str, int]:
    query = query if query is not None else Task.query
    stats = {status: 0 for status in TASK_STATUS_OPTIONS}
    for status, total in (
        query.with_entities(Task.status, db.func.count(Task.id)).group_by(Task.status).all()
    ):
        stats[status] = total
    stats["total"] = sum(stats[status] for status in TASK_STATUS_OPTIONS)
    stats["overdue"] = query.filter(
        Task.due_date.isnot(None),
        Task.due_date < utcnow().date(),
        Task.status != "DONE",
    ).count()
    return stats


def validate_change_request_payload(payload: dict[str, object]) -> dict[str, object]:
    title = str(payload.get("title") or "").strip()
    description = str(payload.get("description") or "").strip()
    category = str(payload.get("category") or "OTHER").strip().upper()
    priority = str(payload.get("priority") or "NORMAL").strip().upper()
    estimated_hours = _coerce_float(payload.get("estimated_hours"))

    if not description:
        raise WorkflowError("Please describe the change you need.")
    if len(description) > 5000:
        raise WorkflowError("Descriptions are limited to 5000 characters.")
    if not title:
        title = description.splitlines()[0][:100]
    if len(title) > 255:
        raise WorkflowError("Titles are limited to 255 characters.")
    if category not in CHANGE_REQUEST_CATEGORY_OPTIONS:
        raise WorkflowError("Choose a valid category.")
    if priority not in CHANGE_REQUEST_PRIORITY_OPTIONS:
        raise WorkflowError("Choose a valid priority.")
    if estimated_hours is not None and (estimated_hours < 0 or estimated_hours > 200):
        raise WorkflowError("Estimated hours must be between 0 and 200.")

    return {
        "title": title,
        "description": description,
        "category": category,
        "priority": priority,
        "estimated_hours": estimated_hours,
    }


def submit_change_request(
    user: User, project: Project, payload: dict[str, object]
) -> tuple[ChangeRequest, dict[str, object]]:
    """Record a client change request against a project's maintenance plan.

    Returns the change request and the allowance check that admitted it.
    """

    if project.status in CLOSED_PROJECT_STATUSES:
        raise WorkflowError("Change requests can't be submitted for closed projects.")

    plan = project.maintenance_plan
    if plan is None or plan.status != "ACTIVE":
        raise BillingError("An active maintenance plan is required to submit requests.")

    fields = validate_change_request_payload(payload)

    allowance = can_submit_change_request(plan)
    if not allowance["allowed"]:
        raise BillingError(allowance["reason"] or "Change request limit reached.")

    balance = get_hours_balance(plan)
    estimated_hours = fields["estimated_hours"]
    urgency_fee = int(URGENCY_FEES.get(fields["priority"], {}).get("fee", 0))

    is_overage = False
    overage_amount = None
    if estimated_hours and not balance["is_unlimited"]:
        available = balance["total_available"]
        if estimated_hours > available:
            is_overage = True
            overage_hours = estimated_hours - max(0.0, available)
            overage_amount = math.ceil(
                overage_hours * ON_DEMAND_SETTINGS["hourly_rate"]
            )

    requires_approval = bool(
        (estimated_hours or 0) > CLIENT_APPROVAL_HOURS_THRESHOLD
        or allowance["requires_approval"]
    )

    change_request = ChangeRequest(
        project=project,
        maintenance_plan=plan,
        requested_by_id=user.id,
        title=fields["title"],
        description=fields["description"],
        category=fields["category"],
        priority=fields["priority"],
        status="PENDING",
        estimated_hours=estimated_hours,
        urgency_fee_cents=urgency_fee,
        is_overage=is_overage,
        overage_amount_cents=overage_amount,
        requires_client_approval=requires_approval,
        flagged_for_review=is_overage or urgency_fee > 0,
    )
    db.session.add(change_request)

    plan.change_requests_used = (plan.change_requests_used or 0) + 1
    if fields["priority"] in {"URGENT", "EMERGENCY"}:
        plan.urgent_requests_used = (plan.urgent_requests_used or 0) + 1
    increment_daily_requests(plan)

    db.session.flush()
    create_task_from_change_request(change_request)
    log_activity(
        "CHANGE_REQUEST_SUBMITTED",
        f"Change request: {change_request.title}",
        f"{user.name} submitted a {change_request.priority.lower()} request for {project.name}.",
        user=user,
        details={"change_request_id": change_request.id, "project_id": project.id},
    )
    return change_request, allowance


def update_change_request(
    change_request: ChangeRequest,
    payload: dict[str, object],
    performed_by: User | None = None,
) -> dict[str, object] | None:
    """Apply an admin update; returns the hours deduction when one happened."""

    if "status" in payload and payload["status"]:
        status = str(payload["status"]).strip().upper()
        if status not in CHANGE_REQUEST_STATUS_OPTIONS:
            raise WorkflowError("Choose a valid status.")
        change_request.status = status

    if "priority" in payload and payload["priority"]:
        priority = str(payload["priority"]).strip().upper()
        if priority not in CHANGE_REQUEST_PRIORITY_OPTIONS:
            raise WorkflowError("Choose a valid priority.")
        change_request.priority = priority

    if "category" in payload and payload["category"]:
        category = str(payload["category"]).strip().upper()
        if category not in CHANGE_REQUEST_CATEGORY_OPTIONS:
            raise WorkflowError("Choose a valid category.")
        change_request.category = category

    for field in ("estimated_hours", "actual_hours"):
        if field in payload and payload[field] not in (None, ""):
            value = _coerce_float(payload[field])
            if value is None or value < 0:
                raise WorkflowError("Hours must be a positive number.")
            setattr(change_request, field, value)

    if "hours_source" in payload and payload["hours_source"]:
        source = str(payload["hours_source"]).strip().upper()
        if source not in HOURS_SOURCE_OPTIONS:
            raise WorkflowError("Choose a valid hours source.")
        change_request.hours_source = source

    if "admin_notes" in payload:
        change_request.admin_notes = str(payload["admin_notes"] or "").strip() or None

    if "flagged_for_review" in payload:
        change_request.flagged_for_review = is_truthy(payload["flagged_for_review"])

    deduction = None
    if change_request.status == "COMPLETED":
        change_request.completed_at = change_request.completed_at or utcnow()
        plan = change_request.maintenance_plan
        if (
            plan is not None
            and (change_request.actual_hours or 0) > 0
            and not change_request.hours_deducted
            and change_request.hours_source != "COMPLIMENTARY"
        ):
            deduction = deduct_hours(
                plan,
                change_request.actual_hours,
                f"Change request: {change_request.title}",
                performed_by=performed_by.name if performed_by else None,
            )
            change_request.hours_deducted = deduction["hours_deducted"]
            change_request.hours_source = deduction["source"]
            if deduction["is_overage"]:
                change_request.is_overage = True
                change_request.overage_amount_cents = math.ceil(
                    deduction["overage_hours"] * ON_DEMAND_SETTINGS["hourly_rate"]
                )
        if change_request.task is not None and change_request.task.status != "DONE":
            set_task_status(change_request.task, "DONE")

    return deduction


def next_invoice_number(year: int | None = None) -> str:
    year = year or utcnow().year
    prefix = f"INV-{year}-"
    sequence = Invoice.query.filter(Invoice.number.like(f"{prefix}%")).count() + 1
    number = f"{prefix}{sequence:05d}"
    while Invoice.query.filter_by(number=number).first() is not None:
        sequence += 1
        number = f"{prefix}{sequence:05d}"
    return number


def parse_invoice_items(raw_items: object) -> list[dict[str, object]]:
    if not isinstance(raw_items, list) or not raw_items:
        raise WorkflowError("Add at least one line item.")

    items = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            raise WorkflowError("Line items must include a description and rate.")
        description = str(raw.get("description") or "").strip()
        quantity = _coerce_int(raw.get("quantity")) or 1
        if "rate_cents" in raw:
            rate_cents = _coerce_int(raw.get("rate_cents"))
        else:
            rate_cents = parse_amount_cents(raw.get("rate"))
        if not description or rate_cents is None:
            raise WorkflowError("Line items must include a description and rate.")
        if quantity < 1 or rate_cents < 0:
            raise WorkflowError("Line item quantities and rates must be positive.")
        items.append(
            {
                "description": description,
                "quantity": quantity,
                "rate_cents": rate_cents,
                "amount_cents": quantity * rate_cents,
            }
        )
    return items


def apply_invoice_items(invoice: Invoice, items: list[dict[str, object]]) -> None:
    invoice.items = [InvoiceItem(**item) for item in items]
    invoice.subtotal_cents = sum(item["amount_cents"] for item in items)
    invoice.total_cents = invoice.subtotal_cents + (invoice.tax_cents or 0)


def create_invoice(
    organization: Organization,
    title: str,
    items: list[dict[str, object]],
    *,
    project: Project | None = None,
    description: str | None = None,
    due_date: date | None = None,
    tax_cents: int = 0,
    status: str = "DRAFT",
) -> Invoice:
    if not title:
        raise WorkflowError("Invoice title is required.")
    if status not in INVOICE_STATUS_OPTIONS:
        status = "DRAFT"

    invoice = Invoice(
        number=next_invoice_number(),
        organization=organization,
        project=project,
        title=title,
        description=description,
        due_date=due_date,
        tax_cents=tax_cents,
        status=status,
    )
    apply_invoice_items(invoice, items)
    db.session.add(invoice)
    return invoice


def invoice_recipient(invoice: Invoice) -> str | None:
    organization = invoice.organization
    if organization is None:
        return None
    owner = organization.owner()
    if owner and owner.email:
        return owner.email
    return organization.email


def send_invoice_receipt(invoice: Invoice) -> bool:
    recipient = invoice_recipient(invoice)
    if not recipient:
        return False

    paid_on = as_utc(invoice.paid_at) or utcnow()
    body = (
        f"Hello,\n\n"
        f"Thank you for your payment of {format_cents(invoice.total_cents)} for "
        f"invoice {invoice.number} ({invoice.title}).\n"
        f"Paid on: {paid_on:%b %d, %Y}\n\n"
        f"{current_app.config.get('SITE_NAME')}"
    )
    if dispatch_notification(
        recipient, f"Receipt for invoice {invoice.number}", body, category="billing"
    ):
        invoice.receipt_sent_at = utcnow()
        return True
    return False


def mark_invoice_paid(
    invoice: Invoice,
    *,
    method: str = "manual",
    paid_at: datetime | None = None,
    stripe_charge_id: str | None = None,
    stripe_payment_id: str | None = None,
    amount_cents: int | None = None,
) -> bool:
    """Mark an invoice paid and record the payment.

    Returns ``False`` without touching anything when the invoice is already
    paid.
    """

    if invoice.status == "PAID":
        return False

    invoice.status = "PAID"
    invoice.paid_at = paid_at or utcnow()

    if stripe_charge_id and Payment.query.filter_by(
        stripe_charge_id=stripe_charge_id
    ).first():
        stripe_charge_id = None

    db.session.add(
        Payment(
            invoice=invoice,
            amount_cents=amount_cents if amount_cents is not None else invoice.total_cents,
            currency=invoice.currency,
            status="COMPLETED",
            method=method,
            stripe_charge_id=stripe_charge_id,
            stripe_payment_id=stripe_payment_id,
            processed_at=invoice.paid_at,
        )
    )
    send_invoice_receipt(invoice)
    return True


def mark_overdue_invoices() -> int:
    today = utcnow().date()
    overdue = Invoice.query.filter(
        Invoice.status == "SENT",
        Invoice.due_date.isnot(None),
        Invoice.due_date < today,
    ).all()
    for invoice in overdue:
        invoice.status = "OVERDUE"
    return len(overdue)


def ensure_stripe_customer(organization: Organization) -> str | None:
    if organization.stripe_customer_id:
        return organization.stripe_customer_id
    if not stripe_active():
        return None

    customer = stripe.Customer.create(
        name=organization.name,
        email=organization.email or None,
        metadata={"organization_id": str(organization.id)},
    )
    organization.stripe_customer_id = customer.id
    return customer.id


def create_stripe_invoice(invoice: Invoice, days_until_due: int = 30) -> Invoice:
    """Push a local invoice to Stripe, finalize it and mark it SENT."""

    if invoice.status == "PAID":
        raise BillingError("This invoice has already been paid.")
    if invoice.stripe_invoice_id:
        raise BillingError("This invoice has already been sent through Stripe.")
    if not stripe_active():
        raise BillingError("Stripe is not configured.")

    customer_id = ensure_stripe_customer(invoice.organization)
    if invoice.due_date:
        days_until_due = max(1, (invoice.due_date - utcnow().date()).days)

    stripe_invoice = stripe.Invoice.create(
        customer=customer_id,
        collection_method="send_invoice",
        days_until_due=days_until_due,
        auto_advance=False,
        description=invoice.title,
        metadata={"invoice_id": str(invoice.id), "invoice_number": invoice.number},
    )
    for item in invoice.items:
        stripe.InvoiceItem.create(
            customer=customer_id,
            invoice=stripe_invoice.id,
            amount=item.amount_cents,
            currency=invoice.currency,
            description=f"{item.description} (x{item.quantity})",
        )
    if invoice.tax_cents:
        stripe.InvoiceItem.create(
            customer=customer_id,
            invoice=stripe_invoice.id,
            amount=invoice.tax_cents,
            currency=invoice.currency,
            description="Tax",
        )

    finalized = stripe.Invoice.finalize_invoice(stripe_invoice.id)

    invoice.stripe_invoice_id = stripe_invoice.id
    invoice.hosted_invoice_url = getattr(finalized, "hosted_invoice_url", None)
    invoice.status = "SENT"
    invoice.sent_at = utcnow()
    return invoice


def stripe_price_id(tier_id: str, billing_cycle: str = "MONTHLY") -> str | None:
    key = f"STRIPE_PRICE_{tier_id.upper()}"
    if billing_cycle.upper() == "ANNUAL":
        key = f"{key}_ANNUAL"
    return current_app.config.get(key)


def ensure_maintenance_plan(
    project: Project, tier_id: str, billing_cycle: str = "MONTHLY"
) -> MaintenancePlan:
    tier = get_tier(tier_id)
    if tier is None:
        raise BillingError("Choose a valid maintenance tier.")
    billing_cycle = billing_cycle.upper()
    if billing_cycle not in BILLING_CYCLE_OPTIONS:
        raise BillingError("Choose a valid billing cycle.")

    plan = project.maintenance_plan
    if plan is None:
        plan = MaintenancePlan(project=project, status="PENDING")
        db.session.add(plan)
    elif plan.status == "ACTIVE" and plan.tier != tier["id"]:
        raise BillingError("Use the change tier option to switch an active plan.")

    apply_tier_to_plan(plan, tier["id"], billing_cycle)
    return plan


def apply_tier_to_plan(
    plan: MaintenancePlan, tier_id: str, billing_cycle: str | None = None
) -> None:
    tier = NONPROFIT_TIERS[tier_id]
    plan.tier = tier_id
    if billing_cycle:
        plan.billing_cycle = billing_cycle
    plan.monthly_price_cents = int(tier["monthly_price"])
    plan.rollover_enabled = bool(tier["rollover_enabled"])
    plan.rollover_cap = float(tier["rollover_cap"])


def activate_maintenance_plan(
    plan: MaintenancePlan,
    subscription_id: str | None = None,
    checkout_session_id: str | None = None,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
) -> MaintenancePlan:
    now = utcnow()
    reactivating = plan.status != "ACTIVE"
    plan.status = "ACTIVE"
    plan.cancelled_at = None
    plan.cancel_at_period_end = False
    if subscription_id:
        plan.stripe_subscription_id = subscription_id
    if checkout_session_id:
        plan.stripe_checkout_session_id = checkout_session_id
    months = 12 if plan.billing_cycle == "ANNUAL" else 1
    if reactivating:
        # A new subscription starts a clean period; old usage does not carry over.
        reset_billing_period(plan)
        plan.current_period_start = period_start or now
    else:
        plan.current_period_start = period_start or as_utc(plan.current_period_start) or now
    plan.current_period_end = period_end or add_months(plan.current_period_start, months)

    project = plan.project
    if project is not None:
        project.maintenance_status = "ACTIVE"
        project.next_billing_date = plan.current_period_end
        if subscription_id:
            project.stripe_subscription_id = subscription_id
    return plan


def change_plan_tier(plan: MaintenancePlan, tier_id: str) -> MaintenancePlan:
    tier = get_tier(tier_id)
    if tier is None:
        raise BillingError("Choose a valid maintenance tier.")
    if plan.status != "ACTIVE":
        raise BillingError("Only active plans can change tier.")
    if plan.tier == tier["id"]:
        raise BillingError("The plan is already on that tier.")

    if plan.stripe_subscription_id and stripe_active():
        price_id = stripe_price_id(tier["id"], plan.billing_cycle)
        if not price_id:
            raise BillingError("No Stripe price is configured for that tier.")
        subscription = stripe.Subscription.retrieve(plan.stripe_subscription_id)
        items = _stripe_value(_stripe_value(subscription, "items"), "data") or []
        if not items:
            raise BillingError("The Stripe subscription has no items to update.")
        stripe.Subscription.modify(
            plan.stripe_subscription_id,
            items=[{"id": items[0].id, "price": price_id}],
            proration_behavior="create_prorations",
            metadata={"plan_id": str(plan.id), "tier": tier["id"]},
        )

    apply_tier_to_plan(plan, tier["id"])
    return plan


def cancel_maintenance_plan(plan: MaintenancePlan) -> MaintenancePlan:
    if plan.status == "CANCELLED":
        raise BillingError("This plan is already cancelled.")

    if plan.stripe_subscription_id and stripe_active():
        stripe.Subscription.modify(
            plan.stripe_subscription_id, cancel_at_period_end=True
        )
        plan.cancel_at_period_end = True
        return plan

    plan.status = "CANCELLED"
    plan.cancelled_at = utcnow()
    if plan.project is not None:
        plan.project.maintenance_status = "CANCELLED"
    return plan


def record_hour_pack_purchase(
    plan: MaintenancePlan,
    pack_id: str,
    stripe_payment_id: str,
    *,
    stripe_session_id: str | None = None,
    hours: float | None = None,
    expiration_days: int | None = None,
    cost_cents: int | None = None,
) -> tuple[HourPack, bool]:
    """Create the hour pack for a paid purchase.

    Keyed by ``stripe_payment_id`` so repeated deliveries return the existing
    pack; the second element says whether a new pack was created.
    """

    existing = HourPack.query.filter_by(stripe_payment_id=stripe_payment_id).first()
    if existing is not None:
        return existing, False

    pack_config = get_hour_pack(pack_id)
    if pack_config is None:
        raise BillingError(f"Unknown hour pack: {pack_id}")

    hours = float(hours if hours is not None else pack_config["hours"])
    never_expires = bool(pack_config["never_expires"])
    if expiration_days is None:
        expiration_days = int(pack_config["expiry_days"])
    purchased_at = utcnow()
    expires_at = None
    if not never_expires and expiration_days:
        expires_at = purchased_at + timedelta(days=expiration_days)

    pack = HourPack(
        plan=plan,
        pack_type=pack_config["id"],
        hours=hours,
        hours_remaining=hours,
        cost_cents=cost_cents if cost_cents is not None else int(pack_config["cost"]),
        purchased_at=purchased_at,
        expires_at=expires_at,
        never_expires=never_expires,
        is_active=True,
        stripe_payment_id=stripe_payment_id,
        stripe_session_id=stripe_session_id,
    )
    db.session.add(pack)
    log_activity(
        "HOUR_PACK_PURCHASED",
        f"Hour pack purchased: {pack_config['name']}",
        f"{format_hours(hours)} added to plan {plan.id}.",
        details={"plan_id": plan.id, "pack_id": pack_config["id"]},
    )
    return pack, True


def process_hour_pack_checkout_session(checkout_session: object) -> HourPack | None:
    metadata = _metadata_dict(checkout_session)
    if metadata.get("type") != "hour-pack":
        return None
    if getattr(checkout_session, "payment_status", None) != "paid":
        raise BillingError("The checkout session has not been paid.")

    plan = None
    plan_id = _coerce_int(metadata.get("plan_id"))
    if plan_id:
        plan = db.session.get(MaintenancePlan, plan_id)
    if plan is None:
        project_id = _coerce_int(metadata.get("project_id"))
        if project_id:
            plan = MaintenancePlan.query.filter_by(project_id=project_id).first()
    if plan is None:
        raise BillingError("No maintenance plan matches this hour pack purchase.")

    payment_id = _stripe_id(getattr(checkout_session, "payment_intent", None)) or getattr(
        checkout_session, "id", None
    )
    pack, _created = record_hour_pack_purchase(
        plan,
        metadata.get("pack_id", ""),
        payment_id,
        stripe_session_id=getattr(checkout_session, "id", None),
        hours=_coerce_float(metadata.get("hours")),
        expiration_days=_coerce_int(metadata.get("expiration_days")),
        cost_cents=_coerce_int(getattr(checkout_session, "amount_total", None)),
    )
    return pack


def _find_invoice_for_checkout(checkout_session: object) -> Invoice | None:
    metadata = _metadata_dict(checkout_session)
    invoice_id = _coerce_int(metadata.get("invoice_id"))
    if invoice_id:
        invoice = db.session.get(Invoice, invoice_id)
        if invoice is not None:
            return invoice
    session_id = getattr(checkout_session, "id", None)
    if session_id:
        return Invoice.query.filter_by(stripe_checkout_session_id=session_id).first()
    return None


def _find_invoice_for_stripe_invoice(stripe_invoice: object) -> Invoice | None:
    stripe_invoice_id = getattr(stripe_invoice, "id", None)
    if stripe_invoice_id:
        invoice = Invoice.query.filter_by(stripe_invoice_id=stripe_invoice_id).first()
        if invoice is not None:
            return invoice
    invoice_id = _coerce_int(_metadata_dict(stripe_invoice).get("invoice_id"))
    if invoice_id:
        return db.session.get(Invoice, invoice_id)
    return None


def _find_plan_for_subscription(subscription: object) -> MaintenancePlan | None:
    subscription_id = getattr(subscription, "id", None)
    if subscription_id:
        plan = MaintenancePlan.query.filter_by(
            stripe_subscription_id=subscription_id
        ).first()
        if plan is not None:
            return plan

    metadata = _metadata_dict(subscription)
    plan_id = _coerce_int(metadata.get("plan_id"))
    if plan_id:
        plan = db.session.get(MaintenancePlan, plan_id)
        if plan is not None:
            return plan
    project_id = _coerce_int(metadata.get("project_id"))
    if project_id:
        return MaintenancePlan.query.filter_by(project_id=project_id).first()
    return None


def _subscription_period(subscription: object) -> tuple[datetime | None, datetime | None]:
    start = _from_stripe_timestamp(_stripe_value(subscription, "current_period_start"))
    end = _from_stripe_timestamp(_stripe_value(subscription, "current_period_end"))
    if start is None or end is None:
        items = _stripe_value(_stripe_value(subscription, "items"), "data") or []
        if items:
            start = start or _from_stripe_timestamp(
                _stripe_value(items[0], "current_period_start")
            )
            end = end or _from_stripe_timestamp(
                _stripe_value(items[0], "current_period_end")
            )
    return start, end


SUBSCRIPTION_STATUS_MAP = {
    "active": "ACTIVE",
    "trialing": "ACTIVE",
    "past_due": "PAUSED",
    "unpaid": "PAUSED",
    "paused": "PAUSED",
    "incomplete": "PENDING",
    "incomplete_expired": "CANCELLED",
    "canceled": "CANCELLED",
}


def handle_stripe_event(event: object) -> bool:
    event_type = getattr(event, "type", "")
    data_object = getattr(getattr(event, "data", None), "object", None)
    if not data_object:
        return False

    handler = STRIPE_EVENT_HANDLERS.get(event_type)
    if handler is None:
        current_app.logger.info("Ignoring unhandled Stripe event type %s", event_type)
        return False

    return handler(event, data_object)


def _handle_checkout_session_completed(event: object, checkout_session: object) -> bool:
    metadata = _metadata_dict(checkout_session)
    checkout_type = metadata.get("type")
    if not checkout_type and getattr(checkout_session, "mode", None) == "subscription":
        checkout_type = "maintenance-subscription"

    if checkout_type == "hour-pack":
        try:
            pack = process_hour_pack_checkout_session(checkout_session)
        except BillingError as error:
            current_app.logger.warning(
                "Hour pack checkout %s not recorded: %s",
                getattr(checkout_session, "id", None),
                error,
            )
            return False
        return pack is not None

    if checkout_type == "maintenance-subscription":
        plan = None
        plan_id = _coerce_int(metadata.get("plan_id"))
        if plan_id:
            plan = db.session.get(MaintenancePlan, plan_id)
        if plan is None:
            project_id = _coerce_int(metadata.get("project_id"))
            if project_id:
                plan = MaintenancePlan.query.filter_by(project_id=project_id).first()
        if plan is None:
            current_app.logger.warning(
                "Checkout session %s references no maintenance plan",
                getattr(checkout_session, "id", None),
            )
            return False
        tier_id = (metadata.get("tier") or "").upper()
        if tier_id in NONPROFIT_TIERS and plan.tier != tier_id:
            apply_tier_to_plan(plan, tier_id)
        activate_maintenance_plan(
            plan,
            subscription_id=_stripe_id(getattr(checkout_session, "subscription", None)),
            checkout_session_id=getattr(checkout_session, "id", None),
        )
        current_app.logger.info("Maintenance plan %s activated", plan.id)
        return True

    invoice = _find_invoice_for_checkout(checkout_session)
    if invoice is None:
        current_app.logger.warning(
            "Checkout session %s does not match an invoice",
            getattr(checkout_session, "id", None),
        )
        return False

    invoice.stripe_checkout_session_id = getattr(
        checkout_session, "id", invoice.stripe_checkout_session_id
    )
    if getattr(checkout_session, "payment_status", None) != "paid":
        return True

    mark_invoice_paid(
        invoice,
        method="stripe",
        stripe_payment_id=_stripe_id(getattr(checkout_session, "payment_intent", None)),
        amount_cents=_coerce_int(getattr(checkout_session, "amount_total", None)),
    )
    return True


def _handle_invoice_paid(event: object, stripe_invoice: object) -> bool:
    invoice = _find_invoice_for_stripe_invoice(stripe_invoice)
    if invoice is None:
        current_app.logger.info(
            "Stripe invoice %s has no local invoice", getattr(stripe_invoice, "id", None)
        )
        return False

    transitions = _stripe_value(stripe_invoice, "status_transitions")
    paid_at = _from_stripe_timestamp(_stripe_value(transitions, "paid_at")) or utcnow()
    newly_paid = invoice.status != "PAID"
    if newly_paid:
        invoice.status = "PAID"
        invoice.paid_at = paid_at

    charge_id = _stripe_id(getattr(stripe_invoice, "charge", None))
    payment_intent_id = _stripe_id(getattr(stripe_invoice, "payment_intent", None))
    already_recorded = False
    if charge_id:
        already_recorded = (
            Payment.query.filter_by(stripe_charge_id=charge_id).first() is not None
        )
    elif not newly_paid:
        already_recorded = True

    if not already_recorded:
        db.session.add(
            Payment(
                invoice=invoice,
                amount_cents=_coerce_int(getattr(stripe_invoice, "amount_paid", None))
                or invoice.total_cents,
                currency=getattr(stripe_invoice, "currency", None) or invoice.currency,
                status="COMPLETED",
                method="stripe",
                stripe_charge_id=charge_id,
                stripe_payment_id=payment_intent_id,
                processed_at=paid_at,
            )
        )

    if newly_paid:
        send_invoice_receipt(invoice)
    return True


def _handle_invoice_payment_failed(event: object, stripe_invoice: object) -> bool:
    invoice = _find_invoice_for_stripe_invoice(stripe_invoice)
    if invoice is None:
        return False

    current_app.logger.warning(
        "Stripe reported a failed payment for invoice %s", invoice.number
    )
    if invoice.status in {"PAID", "CANCELLED"}:
        return True
    if invoice.due_date and invoice.due_date < utcnow().date():
        invoice.status = "OVERDUE"
    return True


def _handle_invoice_finalized(event: object, stripe_invoice: object) -> bool:
    invoice = _find_invoice_for_stripe_invoice(stripe_invoice)
    if invoice is None:
        return False

    hosted_url = getattr(stripe_invoice, "hosted_invoice_url", None)
    if hosted_url:
        invoice.hosted_invoice_url = hosted_url
    if invoice.status == "DRAFT":
        invoice.status = "SENT"
    invoice.sent_at = invoice.sent_at or utcnow()
    return True


def _handle_invoice_voided(event: object, stripe_invoice: object) -> bool:
    invoice = _find_invoice_for_stripe_invoice(stripe_invoice)
    if invoice is None:
        return False
    if invoice.status != "PAID":
        invoice.status = "CANCELLED"
    return True


def _handle_subscription_created(event: object, subscription: object) -> bool:
    plan = _find_plan_for_subscription(subscription)
    if plan is None:
        current_app.logger.warning(
            "Subscription %s does not reference a maintenance plan",
            getattr(subscription, "id", None),
        )
        return False

    subscription_id = getattr(subscription, "id", None)
    plan.stripe_subscription_id = subscription_id
    if plan.project is not None:
        plan.project.stripe_subscription_id = subscription_id

    status = SUBSCRIPTION_STATUS_MAP.get(getattr(subscription, "status", ""), "PENDING")
    if status == "ACTIVE":
        start, end = _subscription_period(subscription)
        activate_maintenance_plan(
            plan, subscription_id=subscription_id, period_start=start, period_end=end
        )
    return True


def _handle_subscription_updated(event: object, subscription: object) -> bool:
    plan = _find_plan_for_subscription(subscription)
    if plan is None:
        return False

    status = SUBSCRIPTION_STATUS_MAP.get(getattr(subscription, "status", ""), plan.status)
    start, end = _subscription_period(subscription)

    previous_start = as_utc(plan.current_period_start)
    if status == "ACTIVE" and start and previous_start and start > previous_start:
        rolled = close_billing_period(plan)
        current_app.logger.info(
            "Plan %s entered a new billing period (%s hours rolled over)",
            plan.id,
            rolled["hours_rolled_over"],
        )

    plan.status = status
    plan.cancel_at_period_end = bool(getattr(subscription, "cancel_at_period_end", False))
    if start:
        plan.current_period_start = start
    if end:
        plan.current_period_end = end

    project = plan.project
    if project is not None:
        if status == "ACTIVE":
            project.maintenance_status = "ACTIVE"
        elif status == "CANCELLED":
            project.maintenance_status = "CANCELLED"
        else:
            project.maintenance_status = "INACTIVE"
        if end:
            project.next_billing_date = end
    return True


def _handle_subscription_deleted(event: object, subscription: object) -> bool:
    plan = _find_plan_for_subscription(subscription)
    if plan is None:
        return False

    plan.status = "CANCELLED"
    plan.cancelled_at = utcnow()
    plan.cancel_at_period_end = False
    plan.stripe_subscription_id = None
    project = plan.project
    if project is not None:
        project.maintenance_status = "CANCELLED"
        project.stripe_subscription_id = None
        project.next_billing_date = None
    return True


STRIPE_EVENT_HANDLERS = {
    "checkout.session.completed": _handle_checkout_session_completed,
    "invoice.paid": _handle_invoice_paid,
    "invoice.payment_succeeded": _handle_invoice_paid,
    "invoice.payment_failed": _handle_invoice_payment_failed,
    "invoice.finalized": _handle_invoice_finalized,
    "invoice.voided": _handle_invoice_voided,
    "customer.subscription.created": _handle_subscription_created,
    "customer.subscription.updated": _handle_subscription_updated,
    "customer.subscription.deleted": _handle_subscription_deleted,
}


def get_dashboard_overview_snapshot(app: Flask) -> dict[str, object]:
    ttl_seconds = float(
        app.config.get(
            "DASHBOARD_OVERVIEW_CACHE_SECONDS",
            DASHBOARD_OVERVIEW_CACHE_SECONDS_DEFAULT,
        )
    )
    now_monotonic = time.monotonic()
    cached = app.config.get(DASHBOARD_OVERVIEW_CACHE_KEY)

    if cached and cached.get("expires_at", 0) > now_monotonic:
        return cached["payload"]

    start_of_week = utcnow() - timedelta(days=7)

    projects_by_status = {status: 0 for status in PROJECT_STATUS_OPTIONS}
    for status, total in (
        db.session.query(Project.status, db.func.count(Project.id))
        .group_by(Project.status)
        .all()
    ):
        projects_by_status[status] = total

    pipeline_counts = {status: 0 for status in LEAD_STATUS_OPTIONS}
    for status, total in (
        db.session.query(Lead.status, db.func.count(Lead.id)).group_by(Lead.status).all()
    ):
        pipeline_counts[status] = total

    outstanding_cents = (
        db.session.query(db.func.coalesce(db.func.sum(Invoice.total_cents), 0))
        .filter(Invoice.status.in_(sorted(OPEN_INVOICE_STATUSES)))
        .scalar()
    )
    paid_cents = (
        db.session.query(db.func.coalesce(db.func.sum(Invoice.total_cents), 0))
        .filter(Invoice.status == "PAID")
        .scalar()
    )
    overdue_invoices = Invoice.query.filter_by(status="OVERDUE").count()
    open_tasks = Task.query.filter(Task.status != "DONE").count()
    submitted_tasks = Task.query.filter_by(status="SUBMITTED").count()
    pending_change_requests = ChangeRequest.query.filter_by(status="PENDING").count()
    active_plans = MaintenancePlan.query.filter_by(status="ACTIVE").count()
    new_leads_this_week = Lead.query.filter(Lead.created_at >= start_of_week).count()

    recent_leads = [
        {
            "id": lead.id,
            "name": lead.name,
            "company": lead.company,
            "status": lead.status,
            "score": lead.lead_score,
        }
        for lead in Lead.query.order_by(Lead.created_at.desc()).limit(5).all()
    ]
    recent_activity = [
        {"type": entry.type, "title": entry.title, "created_at": entry.created_at}
        for entry in ActivityLog.query.order_by(ActivityLog.created_at.desc())
        .limit(10)
        .all()
    ]

    overview_payload = {
        "projects_by_status": projects_by_status,
        "active_projects": projects_by_status["ACTIVE"],
        "open_tasks": open_tasks,
        "submitted_tasks": submitted_tasks,
        "pending_change_requests": pending_change_requests,
        "outstanding_cents": int(outstanding_cents or 0),
        "paid_cents": int(paid_cents or 0),
        "overdue_invoices": overdue_invoices,
        "active_plans": active_plans,
        "pipeline_counts": pipeline_counts,
        "new_leads_this_week": new_leads_this_week,
        "recent_leads": recent_leads,
        "recent_activity": recent_activity,
    }

    app.config[DASHBOARD_OVERVIEW_CACHE_KEY] = {
        "payload": overview_payload,
        "expires_at": now_monotonic + ttl_seconds,
    }

    return overview_payload


def search_records(term: str, limit: int = 10) -> dict[str, list[dict[str, object]]]:
    term = (term or "").strip()
    if len(term) < 2:
        return {"leads": [], "projects": [], "invoices": [], "organizations": []}

    pattern = f"%{term}%"
    leads = (
        Lead.query.filter(
            or_(
                Lead.name.ilike(pattern),
                Lead.email.ilike(pattern),
                Lead.company.ilike(pattern),
            )
        )
        .order_by(Lead.created_at.desc())
        .limit(limit)
        .all()
    )
    projects = (
        Project.query.filter(
            or_(Project.name.ilike(pattern), Project.description.ilike(pattern))
        )
        .order_by(Project.created_at.desc())
        .limit(limit)
        .all()
    )
    invoices = (
        Invoice.query.filter(
            or_(Invoice.number.ilike(pattern), Invoice.title.ilike(pattern))
        )
        .order_by(Invoice.created_at.desc())
        .limit(limit)
        .all()
    )
    organizations = (
        Organization.query.filter(
            or_(Organization.name.ilike(pattern), Organization.email.ilike(pattern))
        )
        .order_by(Organization.name.asc())
        .limit(limit)
        .all()
    )
    return {
        "leads": [
            {"id": lead.id, "name": lead.name, "company": lead.company, "status": lead.status}
            for lead in leads
        ],
        "projects": [
            {"id": project.id, "name": project.name, "status": project.status}
            for project in projects
        ],
        "invoices": [
            {
                "id": invoice.id,
                "number": invoice.number,
                "title": invoice.title,
                "status": invoice.status,
            }
            for invoice in invoices
        ],
        "organizations": [
            {"id": organization.id, "name": organization.name}
            for organization in organizations
        ],
    }


def _dashboard_overview_cache_invalidator(mapper, connection, target):  # noqa: ARG001
    invalidate_dashboard_overview_cache()


for model in (
    Lead,
    Project,
    Task,
    ChangeRequest,
    Invoice,
    MaintenancePlan,
    ActivityLog,
):
    for event_name in ("after_insert", "after_update", "after_delete"):
        event.listen(model, event_name, _dashboard_overview_cache_invalidator)


def _isoformat(value: datetime | date | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return value.isoformat()


def serialize_lead(lead: Lead) -> dict[str, object]:
    return {
        "id": lead.id,
        "name": lead.name,
        "email": lead.email,
        "phone": lead.phone,
        "company": lead.company,
        "message": lead.message,
        "source": lead.source,
        "status": lead.status,
        "service_type": lead.service_type,
        "timeline": lead.timeline,
        "budget": lead.budget,
        "notes": lead.notes,
        "lead_score": lead.lead_score,
        "score_label": lead.score_label,
        "organization_id": lead.organization_id,
        "project_id": lead.project.id if lead.project else None,
        "converted_at": _isoformat(lead.converted_at),
        "created_at": _isoformat(lead.created_at),
    }


def serialize_project(project: Project) -> dict[str, object]:
    return {
        "id": project.id,
        "name": project.name,
        "description": project.description,
        "status": project.status,
        "organization_id": project.organization_id,
        "organization": project.organization.name if project.organization else None,
        "lead_id": project.lead_id,
        "budget_cents": project.budget_cents,
        "start_date": _isoformat(project.start_date),
        "end_date": _isoformat(project.end_date),
        "maintenance_status": project.maintenance_status,
        "next_billing_date": _isoformat(project.next_billing_date),
        "created_at": _isoformat(project.created_at),
    }


def serialize_task(task: Task) -> dict[str, object]:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "priority": task.priority,
        "project_id": task.project_id,
        "change_request_id": task.change_request_id,
        "assigned_to_id": task.assigned_to_id,
        "assigned_to_role": task.assigned_to_role,
        "estimated_hours": task.estimated_hours,
        "actual_hours": task.actual_hours,
        "due_date": _isoformat(task.due_date),
        "submitted_at": _isoformat(task.submitted_at),
        "submission_notes": task.submission_notes,
        "approved_at": _isoformat(task.approved_at),
        "completed_at": _isoformat(task.completed_at),
    }


def serialize_change_request(change_request: ChangeRequest) -> dict[str, object]:
    return {
        "id": change_request.id,
        "project_id": change_request.project_id,
        "title": change_request.title,
        "description": change_request.description,
        "category": change_request.category,
        "priority": change_request.priority,
        "status": change_request.status,
        "estimated_hours": change_request.estimated_hours,
        "actual_hours": change_request.actual_hours,
        "hours_deducted": change_request.hours_deducted,
        "hours_source": change_request.hours_source,
        "urgency_fee_cents": change_request.urgency_fee_cents,
        "is_overage": change_request.is_overage,
        "overage_amount_cents": change_request.overage_amount_cents,
        "requires_client_approval": change_request.requires_client_approval,
        "flagged_for_review": change_request.flagged_for_review,
        "task_id": change_request.task.id if change_request.task else None,
        "completed_at": _isoformat(change_request.completed_at),
        "created_at": _isoformat(change_request.created_at),
    }


def serialize_invoice(invoice: Invoice) -> dict[str, object]:
    return {
        "id": invoice.id,
        "number": invoice.number,
        "organization_id": invoice.organization_id,
        "project_id": invoice.project_id,
        "title": invoice.title,
        "description": invoice.description,
        "status": invoice.status,
        "currency": invoice.currency,
        "subtotal_cents": invoice.subtotal_cents,
        "tax_cents": invoice.tax_cents,
        "total_cents": invoice.total_cents,
        "due_date": _isoformat(invoice.due_date),
        "sent_at": _isoformat(invoice.sent_at),
        "paid_at": _isoformat(invoice.paid_at),
        "hosted_invoice_url": invoice.hosted_invoice_url,
        "items": [
            {
                "description": item.description,
                "quantity": item.quantity,
                "rate_cents": item.rate_cents,
                "amount_cents": item.amount_cents,
            }
            for item in invoice.items
        ],
    }


def serialize_plan(plan: MaintenancePlan, include_balance: bool = True) -> dict[str, object]:
    payload = {
        "id": plan.id,
        "project_id": plan.project_id,
        "tier": plan.tier,
        "tier_name": plan.tier_config["name"],
        "billing_cycle": plan.billing_cycle,
        "status": plan.status,
        "monthly_price_cents": plan.monthly_price_cents,
        "on_demand_enabled": plan.on_demand_enabled,
        "daily_request_limit": plan.daily_request_limit,
        "cancel_at_period_end": plan.cancel_at_period_end,
        "current_period_start": _isoformat(plan.current_period_start),
        "current_period_end": _isoformat(plan.current_period_end),
    }
    if include_balance:
        balance = dict(get_hours_balance(plan))
        for key in ("rollover_expiring_soon", "pack_hours_expiring_soon"):
            balance[key] = [
                {**entry, "expires_at": _isoformat(entry["expires_at"])}
                for entry in balance[key]
            ]
        payload["balance"] = balance
    return payload


def register_routes(app: Flask) -> None:
    def respond(
        payload: dict[str, object] | None,
        message: str,
        endpoint: str,
        *,
        status: int = 200,
        category: str = "success",
        **url_values,
    ):
        if wants_json_response():
            body = dict(payload or {})
            if status >= 400:
                body.setdefault("error", message)
            else:
                body.setdefault("message", message)
            return jsonify(body), status
        flash(message, category if status < 400 else "danger")
        return redirect(url_for(endpoint, **url_values))

    def client_project_or_404(user: User, project_id: int) -> Project:
        project = Project.query.filter(
            Project.id == project_id,
            Project.organization_id.in_(user_organization_ids(user) or [-1]),
        ).first()
        if project is None:
            abort(404)
        return project

    @app.errorhandler(WorkflowError)
    def handle_workflow_error(error: WorkflowError):
        db.session.rollback()
        if wants_json_response():
            return jsonify({"error": str(error)}), 400
        flash(str(error), "danger")
        return redirect(request.referrer or url_for("index"))

    @app.template_filter("currency")
    def format_currency(value: int | float | Decimal | None):
        return format_cents(value)

    @app.template_filter("hours")
    def format_hours_filter(value: float | int | None):
        return format_hours(value or 0)

    @app.template_filter("date_or_dash")
    def format_date(value: date | None):
        if not value:
            return "-"
        return value.strftime("%b %d, %Y")

    @app.context_processor
    def inject_site_context():
        return {
            "site_name": app.config.get("SITE_NAME"),
            "contact_email": app.config.get("CONTACT_EMAIL"),
            "current_year": utcnow().year,
            "tiers": [NONPROFIT_TIERS[tier_id] for tier_id in TIER_ORDER],
            "hour_packs": list(HOUR_PACKS.values()),
            "staff_logged_in": bool(session.get(STAFF_SESSION_KEY)),
            "portal_logged_in": bool(session.get(PORTAL_SESSION_KEY)),
        }

    @app.route("/")
    def index():
        return render_template("index.html")

    @app.route("/services")
    def services():
        if wants_json_response():
            return jsonify(
                {
                    "tiers": [NONPROFIT_TIERS[tier_id] for tier_id in TIER_ORDER],
                    "hour_packs": list(HOUR_PACKS.values()),
                    "urgency_fees": URGENCY_FEES,
                    "hourly_rate": ON_DEMAND_SETTINGS["hourly_rate"],
                }
            )
        return render_template("services.html", urgency_fees=URGENCY_FEES)

    @app.route("/contact", methods=["GET", "POST"])
    def contact():
        if request.method == "GET":
            return render_template("contact.html")

        payload = request_payload()
        name = str(payload.get("name") or "").strip()
        email = str(payload.get("email") or "").strip().lower()
        message = str(payload.get("message") or "").strip()

        if not name or not email or "@" not in email:
            return respond(
                None,
                "Please share your name and a valid email address.",
                "contact",
                status=400,
            )

        lead = Lead(
            name=name,
            email=email,
            phone=str(payload.get("phone") or "").strip() or None,
            company=str(payload.get("company") or "").strip() or None,
            message=message or None,
            source="Website",
            status="NEW",
            service_type=str(payload.get("service_type") or "").strip() or None,
            timeline=str(payload.get("timeline") or "").strip() or None,
            budget=str(payload.get("budget") or "").strip() or None,
            website=str(payload.get("website") or "").strip() or None,
            category=str(payload.get("category") or "").strip() or None,
            city=str(payload.get("city") or "").strip() or None,
            state=str(payload.get("state") or "").strip().upper() or None,
        )
        lead.has_website = bool(lead.website)
        score_lead(lead)
        db.session.add(lead)
        log_activity("LEAD_CREATED", f"New lead: {name}", lead.company)
        db.session.commit()

        notify_staff(
            f"New lead: {name}",
            (
                f"Name: {name}\n"
                f"Email: {email}\n"
                f"Company: {lead.company or '-'}\n"
                f"Service: {lead.service_type or '-'}\n"
                f"Score: {lead.lead_score} ({lead.score_label})\n\n"
                f"{message}"
            ),
            category="lead",
        )

        return respond(
            {"lead_id": lead.id},
            "Thanks for reaching out! We'll be in touch shortly.",
            "contact",
            status=201,
        )

    @app.route("/login", methods=["GET", "POST"])
    def login():
        if request.method == "POST":
            email = request.form.get("email", "").strip().lower()
            password = request.form.get("password", "")

            user = User.query.filter_by(email=email).first() if email else None
            if user and user.is_active and user.is_staff and user.check_password(password):
                session[STAFF_SESSION_KEY] = user.id
                session["staff_logged_in_at"] = utcnow().isoformat()
                user.last_login_at = utcnow()
                db.session.commit()
                flash("Welcome back!", "success")
                redirect_target = request.args.get("next") or url_for("dashboard")
                return redirect(redirect_target)

            flash("Invalid credentials. Please try again.", "danger")

        return render_template("login.html")

    @app.get("/logout")
    def logout():
        session.pop(STAFF_SESSION_KEY, None)
        session.pop("staff_logged_in_at", None)
        flash("You have been logged out.", "info")
        return redirect(url_for("index"))

    @app.route("/portal/login", methods=["GET", "POST"])
    def portal_login():
        if session.get(PORTAL_SESSION_KEY):
            existing_user = db.session.get(User, session[PORTAL_SESSION_KEY])
            if existing_user:
                return redirect(url_for("portal_dashboard"))

        if request.method == "POST":
            email = request.form.get("email", "").strip().lower()
            password = request.form.get("password", "")

            user = User.query.filter_by(email=email).first() if email else None
            if user and user.is_active and user.check_password(password):
                session[PORTAL_SESSION_KEY] = user.id
                session["portal_authenticated_at"] = utcnow().isoformat()
                user.last_login_at = utcnow()
                db.session.commit()
                flash("Welcome to your client portal!", "success")
                redirect_target = request.args.get("next") or url_for("portal_dashboard")
                return redirect(redirect_target)

            flash("Invalid email or password. Please try again.", "danger")

        return render_template("portal_login.html")

    @app.get("/portal/logout")
    def portal_logout():
        session.pop(PORTAL_SESSION_KEY, None)
        session.pop("portal_authenticated_at", None)
        flash("You have been logged out of the client portal.", "info")
        return redirect(url_for("portal_login"))

    @app.route("/portal/signup", methods=["GET", "POST"])
    def portal_signup():
        if request.method == "GET":
            return render_template("portal_signup.html")

        name = request.form.get("name", "").strip()
        email = request.form.get("email", "").strip().lower()
        password = request.form.get("password", "")
        organization_name = request.form.get("organization", "").strip()

        if not name or not email or "@" not in email:
            flash("Name and a valid email are required.", "danger")
            return redirect(url_for("portal_signup"))
        if len(password) < 8:
            flash("Passwords must be at least 8 characters.", "danger")
            return redirect(url_for("portal_signup"))
        if User.query.filter_by(email=email).first() is not None:
            flash("An account with that email already exists. Please log in.", "warning")
            return redirect(url_for("portal_login"))

        user = User(name=name, email=email, role="CLIENT")
        user.set_password(password)
        db.session.add(user)

        # Existing organizations gain members only through staff (lead conversion).
        if organization_name:
            organization = Organization(
                name=organization_name,
                slug=generate_unique_org_slug(organization_name),
                email=email,
            )
            db.session.add(organization)
            db.session.add(
                OrganizationMember(organization=organization, user=user, role="OWNER")
            )

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            flash("We couldn't create that account. Please try again.", "danger")
            return redirect(url_for("portal_signup"))

        session[PORTAL_SESSION_KEY] = user.id
        flash("Your account is ready.", "success")
        return redirect(url_for("portal_dashboard"))

    @app.route("/dashboard")
    @login_required
    def dashboard():
        snapshot = get_dashboard_overview_snapshot(app)
        if wants_json_response():
            payload = dict(snapshot)
            payload["recent_activity"] = [
                {**entry, "created_at": _isoformat(entry["created_at"])}
                for entry in snapshot["recent_activity"]
            ]
            return jsonify(payload)
        stripe_config = StripeConfig.query.first()
        notification_config = NotificationConfig.query.first()
        return render_template(
            "dashboard.html",
            overview=snapshot,
            stripe_config=stripe_config,
            notification_config=notification_config,
        )

    @app.get("/admin/search")
    @login_required
    def admin_search():
        return jsonify(search_records(request.args.get("q", "")))

    @app.post("/admin/users")
    @login_required("CEO", "ADMIN")
    def create_staff_user():
        payload = request_payload()
        name = str(payload.get("name") or "").strip()
        email = str(payload.get("email") or "").strip().lower()
        password = str(payload.get("password") or "")
        role = str(payload.get("role") or "STAFF").strip().upper()

        if not name or not email or not password:
            return respond(None, "Name, email and password are required.", "dashboard", status=400)
        if role not in USER_ROLE_OPTIONS:
            return respond(None, "Choose a valid role.", "dashboard", status=400)
        if User.query.filter_by(email=email).first() is not None:
            return respond(None, "A user with that email already exists.", "dashboard", status=400)

        user = User(name=name, email=email, role=role)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return respond({"user_id": user.id}, f"Created {role.lower()} account for {name}.", "dashboard", status=201)

    @app.get("/admin/leads")
    @login_required
    def admin_leads():
        status_filter = request.args.get("status", "").strip().upper()
        query = Lead.query
        if status_filter in LEAD_STATUS_OPTIONS:
            query = query.filter_by(status=status_filter)
        leads = query.order_by(Lead.lead_score.desc(), Lead.created_at.desc()).all()

        pipeline = {status: [] for status in LEAD_STATUS_OPTIONS}
        for lead in leads:
            pipeline.setdefault(lead.status, []).append(lead)

        if wants_json_response():
            return jsonify(
                {
                    status: [serialize_lead(lead) for lead in entries]
                    for status, entries in pipeline.items()
                }
            )
        return render_template("admin_leads.html", pipeline=pipeline)

    @app.post("/admin/leads")
    @login_required
    def create_lead_admin():
        payload = request_payload()
        name = str(payload.get("name") or "").strip()
        email = str(payload.get("email") or "").strip().lower()
        if not name or not email:
            return respond(None, "Lead name and email are required.", "admin_leads", status=400)

        lead = Lead(name=name, email=email, source=str(payload.get("source") or "Manual"))
        _apply_lead_fields(lead, payload)
        score_lead(lead)
        db.session.add(lead)
        log_activity("LEAD_CREATED", f"New lead: {name}", user=g.current_user)
        db.session.commit()
        return respond({"lead": serialize_lead(lead)}, f"Lead {name} added.", "admin_leads", status=201)

    def _apply_lead_fields(lead: Lead, payload: dict[str, object]) -> None:
        for field in (
            "phone",
            "company",
            "message",
            "service_type",
            "timeline",
            "budget",
            "notes",
            "website",
            "category",
            "city",
        ):
            if field in payload:
                setattr(lead, field, str(payload[field] or "").strip() or None)
        if "state" in payload:
            lead.state = str(payload["state"] or "").strip().upper() or None
        if "website_quality" in payload:
            quality = str(payload["website_quality"] or "").strip().upper()
            lead.website_quality = quality if quality in WEBSITE_QUALITY_OPTIONS else None
        if "has_website" in payload:
            lead.has_website = is_truthy(payload["has_website"])
        elif "website" in payload:
            lead.has_website = bool(lead.website)
        for field in ("annual_revenue", "employee_count", "emails_sent"):
            if field in payload:
                value = _coerce_int(payload[field])
                if field == "emails_sent":
                    value = value or 0
                setattr(lead, field, value)

    @app.get("/admin/leads/<int:lead_id>")
    @login_required
    def admin_lead_detail(lead_id: int):
        lead = db.get_or_404(Lead, lead_id)
        if wants_json_response():
            return jsonify({"lead": serialize_lead(lead)})
        return render_template("admin_lead.html", lead=lead, statuses=LEAD_STATUS_OPTIONS)

    @app.post("/admin/leads/<int:lead_id>/status")
    @login_required
    def update_lead_status_admin(lead_id: int):
        lead = db.get_or_404(Lead, lead_id)
        update_lead_status(lead, str(request_payload().get("status") or ""))
        log_activity("LEAD_STATUS", f"Lead {lead.name} moved to {lead.status}", user=g.current_user)
        db.session.commit()
        return respond({"lead": serialize_lead(lead)}, "Lead status updated.", "admin_lead_detail", lead_id=lead.id)

    @app.post("/admin/leads/<int:lead_id>/notes")
    @login_required
    def update_lead_notes(lead_id: int):
        lead = db.get_or_404(Lead, lead_id)
        lead.notes = str(request_payload().get("notes") or "").strip() or None
        db.session.commit()
        return respond({"lead": serialize_lead(lead)}, "Notes saved.", "admin_lead_detail", lead_id=lead.id)

    @app.post("/admin/leads/<int:lead_id>/update")
    @login_required
    def update_lead_admin(lead_id: int):
        lead = db.get_or_404(Lead, lead_id)
        payload = request_payload()
        if "name" in payload and str(payload["name"]).strip():
            lead.name = str(payload["name"]).strip()
        if "email" in payload and str(payload["email"]).strip():
            lead.email = str(payload["email"]).strip().lower()
        _apply_lead_fields(lead, payload)
        score_lead(lead)
        db.session.commit()
        return respond({"lead": serialize_lead(lead)}, "Lead updated.", "admin_lead_detail", lead_id=lead.id)

    @app.post("/admin/leads/<int:lead_id>/delete")
    @login_required
    def delete_lead_admin(lead_id: int):
        lead = db.get_or_404(Lead, lead_id)
        delete_lead(lead)
        db.session.commit()
        return respond(None, "Lead deleted.", "admin_leads")

    @app.post("/admin/leads/<int:lead_id>/convert")
    @login_required("CEO", "CFO")
    def convert_lead_admin(lead_id: int):
        lead = db.get_or_404(Lead, lead_id)
        budget_cents = parse_amount_cents(request_payload().get("estimated_budget"))
        project = convert_lead_to_project(lead, estimated_budget_cents=budget_cents)
        db.session.commit()
        return respond(
            {"project": serialize_project(project)},
            f"{lead.name} converted to project {project.name}.",
            "admin_project_detail",
            status=201,
            project_id=project.id,
        )

    @app.get("/admin/projects")
    @login_required
    def admin_projects():
        query = Project.query
        status_filter = request.args.get("status", "").strip().upper()
        if status_filter in PROJECT_STATUS_OPTIONS:
            query = query.filter_by(status=status_filter)
        organization_id = request.args.get("organization_id", type=int)
        if organization_id:
            query = query.filter_by(organization_id=organization_id)
        search_term = request.args.get("q", "").strip()
        if search_term:
            query = query.filter(Project.name.ilike(f"%{search_term}%"))
        projects = query.order_by(Project.created_at.desc()).all()

        if wants_json_response():
            return jsonify({"projects": [serialize_project(project) for project in projects]})
        organizations = Organization.query.order_by(Organization.name.asc()).all()
        return render_template(
            "admin_projects.html",
            projects=projects,
            organizations=organizations,
            statuses=PROJECT_STATUS_OPTIONS,
        )

    def _apply_project_fields(project: Project, payload: dict[str, object]) -> None:
        if "name" in payload:
            name = str(payload["name"] or "").strip()
            if not name:
                raise WorkflowError("Project name is required.")
            project.name = name
        if "description" in payload:
            project.description = str(payload["description"] or "").strip() or None
        if "status" in payload and payload["status"]:
            status = str(payload["status"]).strip().upper()
            if status not in PROJECT_STATUS_OPTIONS:
                raise WorkflowError("Choose a valid project status.")
            project.status = status
        if "budget" in payload:
            project.budget_cents = parse_amount_cents(payload["budget"])
        for field in ("start_date", "end_date"):
            if field in payload:
                raw_value = payload[field]
                parsed = parse_iso_date(raw_value)
                if raw_value and parsed is None:
                    raise WorkflowError("Please use the YYYY-MM-DD format for dates.")
                setattr(project, field, parsed)

    @app.post("/admin/projects")
    @login_required("CEO", "CFO", "ADMIN")
    def create_project_admin():
        payload = request_payload()
        organization = db.session.get(Organization, _coerce_int(payload.get("organization_id")) or 0)
        if organization is None:
            return respond(None, "Choose an organization for the project.", "admin_projects", status=400)

        project = Project(name="", organization=organization, status="LEAD")
        payload.setdefault("name", "")
        _apply_project_fields(project, payload)
        db.session.add(project)
        log_activity("PROJECT_CREATED", f"Project created: {project.name}", user=g.current_user)
        db.session.commit()
        return respond(
            {"project": serialize_project(project)},
            f"Project {project.name} created.",
            "admin_project_detail",
            status=201,
            project_id=project.id,
        )

    @app.get("/admin/projects/<int:project_id>")
    @login_required
    def admin_project_detail(project_id: int):
        project = db.get_or_404(Project, project_id)
        if wants_json_response():
            payload = {
                "project": serialize_project(project),
                "tasks": [serialize_task(task) for task in project.tasks],
                "change_requests": [
                    serialize_change_request(change_request)
                    for change_request in project.change_requests
                ],
                "invoices": [serialize_invoice(invoice) for invoice in project.invoices],
                "plan": serialize_plan(project.maintenance_plan)
                if project.maintenance_plan
                else None,
            }
            return jsonify(payload)
        plan = project.maintenance_plan
        return render_template(
            "admin_project.html",
            project=project,
            plan=plan,
            balance=get_hours_balance(plan) if plan else None,
            statuses=PROJECT_STATUS_OPTIONS,
        )

    @app.post("/admin/projects/<int:project_id>/update")
    @login_required("CEO", "CFO", "ADMIN")
    def update_project_admin(project_id: int):
        project = db.get_or_404(Project, project_id)
        _apply_project_fields(project, request_payload())
        db.session.commit()
        return respond(
            {"project": serialize_project(project)},
            "Project updated.",
            "admin_project_detail",
            project_id=project.id,
        )

    @app.post("/admin/projects/<int:project_id>/delete")
    @login_required("CEO", "CFO")
    def delete_project_admin(project_id: int):
        project = db.get_or_404(Project, project_id)
        if any(invoice.status == "PAID" for invoice in project.invoices):
            return respond(
                None,
                "Projects with paid invoices cannot be deleted.",
                "admin_project_detail",
                status=400,
                project_id=project.id,
            )
        for invoice in list(project.invoices):
            invoice.project = None
        db.session.delete(project)
        db.session.commit()
        return respond(None, "Project deleted.", "admin_projects")

    @app.get("/admin/tasks")
    @login_required
    def admin_tasks():
        query = Task.query
        status_filter = request.args.get("status", "").strip().upper()
        if status_filter in TASK_STATUS_OPTIONS:
            query = query.filter_by(status=status_filter)
        role_filter = request.args.get("role", "").strip().upper()
        if role_filter:
            query = query.filter_by(assigned_to_role=role_filter)
        if request.args.get("mine"):
            query = query.filter_by(assigned_to_id=g.current_user.id)
        if request.args.get("unassigned"):
            query = query.filter(Task.assigned_to_id.is_(None))
        project_id = request.args.get("project_id", type=int)
        if project_id:
            query = query.filter_by(project_id=project_id)
        tasks = query.order_by(Task.created_at.desc()).all()

        if wants_json_response():
            return jsonify({"tasks": [serialize_task(task) for task in tasks]})
        return render_template(
            "admin_tasks.html",
            tasks=tasks,
            stats=get_task_stats(),
            statuses=TASK_STATUS_OPTIONS,
        )

    @app.get("/admin/tasks/stats")
    @login_required
    def admin_task_stats():
        return jsonify(get_task_stats())

    @app.post("/admin/tasks")
    @login_required(*EXECUTIVE_ROLES)
    def create_task_admin():
        payload = request_payload()
        title = str(payload.get("title") or "").strip()
        if not title:
            return respond(None, "Task title is required.", "admin_tasks", status=400)

        priority = str(payload.get("priority") or "MEDIUM").strip().upper()
        if priority not in TASK_PRIORITY_OPTIONS:
            return respond(None, "Choose a valid priority.", "admin_tasks", status=400)

        project_id = _coerce_int(payload.get("project_id"))
        if project_id and db.session.get(Project, project_id) is None:
            return respond(None, "That project does not exist.", "admin_tasks", status=400)

        assigned_to_id = _coerce_int(payload.get("assigned_to_id"))
        if assigned_to_id and db.session.get(User, assigned_to_id) is None:
            return respond(None, "That team member does not exist.", "admin_tasks", status=400)

        due_raw = payload.get("due_date")
        due_date_value = parse_iso_date(due_raw)
        if due_raw and due_date_value is None:
            return respond(None, "Please use the YYYY-MM-DD format for due dates.", "admin_tasks", status=400)

        role = str(payload.get("assigned_to_role") or "").strip().upper() or None
        if role and role not in STAFF_ROLES:
            return respond(None, "Choose a valid team role.", "admin_tasks", status=400)

        task = Task(
            title=title,
            description=str(payload.get("description") or "").strip() or None,
            status="IN_PROGRESS" if assigned_to_id else "TODO",
            priority=priority,
            project_id=project_id,
            assigned_to_id=assigned_to_id,
            assigned_to_role=role,
            created_by_id=g.current_user.id,
            estimated_hours=_coerce_float(payload.get("estimated_hours")),
            due_date=due_date_value,
        )
        db.session.add(task)
        log_activity("TASK_CREATED", f"Task created: {title}", user=g.current_user)
        db.session.commit()
        return respond({"task": serialize_task(task)}, "Task created.", "admin_tasks", status=201)

    @app.post("/admin/tasks/<int:task_id>/claim")
    @login_required
    def claim_task_admin(task_id: int):
        task = db.get_or_404(Task, task_id)
        claim_task(task, g.current_user)
        db.session.commit()
        return respond({"task": serialize_task(task)}, "Task claimed.", "admin_tasks")

    @app.post("/admin/tasks/<int:task_id>/submit")
    @login_required
    def submit_task_admin(task_id: int):
        task = db.get_or_404(Task, task_id)
        payload = request_payload()
        submit_task(
            task,
            g.current_user,
            notes=str(payload.get("notes") or "").strip() or None,
            actual_hours=_coerce_float(payload.get("actual_hours")),
        )
        log_activity("TASK_SUBMITTED", f"Task submitted: {task.title}", user=g.current_user)
        db.session.commit()
        return respond({"task": serialize_task(task)}, "Task submitted for review.", "admin_tasks")

    @app.post("/admin/tasks/<int:task_id>/review")
    @login_required("CEO")
    def review_task_admin(task_id: int):
        task = db.get_or_404(Task, task_id)
        payload = request_payload()
        decision = str(payload.get("decision") or "").strip().lower()
        if decision not in {"approve", "reject"}:
            return respond(None, "Choose approve or reject.", "admin_tasks", status=400)
        review_task(
            task,
            approve=decision == "approve",
            notes=str(payload.get("notes") or "").strip() or None,
        )
        db.session.commit()
        message = "Task approved." if decision == "approve" else "Task sent back for changes."
        return respond({"task": serialize_task(task)}, message, "admin_tasks")

    @app.post("/admin/tasks/<int:task_id>/status")
    @login_required
    def update_task_status_admin(task_id: int):
        task = db.get_or_404(Task, task_id)
        set_task_status(task, str(request_payload().get("status") or ""))
        db.session.commit()
        return respond({"task": serialize_task(task)}, "Task status updated.", "admin_tasks")

    @app.post("/admin/tasks/<int:task_id>/assign")
    @login_required(*EXECUTIVE_ROLES)
    def assign_task_admin(task_id: int):
        task = db.get_or_404(Task, task_id)
        payload = request_payload()
        assignee_id = _coerce_int(payload.get("assigned_to_id"))
        if assignee_id:
            assignee = db.session.get(User, assignee_id)
            if assignee is None or not assignee.is_staff:
                return respond(None, "Choose a team member to assign.", "admin_tasks", status=400)
            task.assigned_to_id = assignee.id
            if task.status == "TODO":
                task.status = "IN_PROGRESS"
        else:
            task.assigned_to_id = None
        if "assigned_to_role" in payload:
            role = str(payload.get("assigned_to_role") or "").strip().upper() or None
            if role and role not in STAFF_ROLES:
                return respond(None, "Choose a valid team role.", "admin_tasks", status=400)
            task.assigned_to_role = role
        db.session.commit()
        return respond({"task": serialize_task(task)}, "Task assignment updated.", "admin_tasks")

    @app.post("/admin/tasks/<int:task_id>/delete")
    @login_required(*EXECUTIVE_ROLES)
    def delete_task_admin(task_id: int):
        task = db.get_or_404(Task, task_id)
        db.session.delete(task)
        db.session.commit()
        return respond(None, "Task deleted.", "admin_tasks")

    @app.post("/admin/tasks/bulk")
    @login_required(*EXECUTIVE_ROLES)
    def bulk_update_tasks():
        payload = request_payload()
        action = str(payload.get("action") or "").strip().lower()
        raw_ids = payload.get("task_ids") or []
        if isinstance(raw_ids, str):
            raw_ids = raw_ids.split(",")
        task_ids = [task_id for task_id in (_coerce_int(raw) for raw in raw_ids) if task_id]
        if not task_ids:
            return respond(None, "Select at least one task.", "admin_tasks", status=400)

        tasks = Task.query.filter(Task.id.in_(task_ids)).all()
        if action == "status":
            for task in tasks:
                set_task_status(task, str(payload.get("status") or ""))
        elif action == "assign":
            assignee_id = _coerce_int(payload.get("assigned_to_id"))
            assignee = db.session.get(User, assignee_id) if assignee_id else None
            if assignee_id and (assignee is None or not assignee.is_staff):
                return respond(None, "Choose a team member to assign.", "admin_tasks", status=400)
            for task in tasks:
                task.assigned_to_id = assignee.id if assignee else None
        elif action == "delete":
            for task in tasks:
                db.session.delete(task)
        else:
            return respond(None, "Unknown bulk action.", "admin_tasks", status=400)

        db.session.commit()
        return respond({"updated": len(tasks)}, f"Updated {len(tasks)} tasks.", "admin_tasks")

    @app.get("/admin/change-requests")
    @login_required
    def admin_change_requests():
        query = ChangeRequest.query
        status_filter = request.args.get("status", "").strip().upper()
        if status_filter in CHANGE_REQUEST_STATUS_OPTIONS:
            query = query.filter_by(status=status_filter)
        change_requests = query.order_by(ChangeRequest.created_at.desc()).all()
        if wants_json_response():
            return jsonify(
                {
                    "change_requests": [
                        serialize_change_request(change_request)
                        for change_request in change_requests
                    ]
                }
            )
        return render_template(
            "admin_change_requests.html",
            change_requests=change_requests,
            statuses=CHANGE_REQUEST_STATUS_OPTIONS,
        )

    @app.get("/admin/change-requests/<int:change_request_id>")
    @login_required
    def admin_change_request_detail(change_request_id: int):
        change_request = db.get_or_404(ChangeRequest, change_request_id)
        return jsonify({"change_request": serialize_change_request(change_request)})

    @app.route(
        "/admin/change-requests/<int:change_request_id>",
        methods=["PATCH"],
        endpoint="patch_change_request",
    )
    @app.post("/admin/change-requests/<int:change_request_id>/update")
    @login_required
    def update_change_request_admin(change_request_id: int):
        change_request = db.get_or_404(ChangeRequest, change_request_id)
        deduction = update_change_request(
            change_request, request_payload(), performed_by=g.current_user
        )
        if deduction is not None:
            log_activity(
                "HOURS_DEDUCTED",
                f"{format_hours(deduction['hours_deducted'])} deducted for {change_request.title}",
                user=g.current_user,
                details={"change_request_id": change_request.id, "source": deduction["source"]},
            )
        db.session.commit()

        if deduction is not None and change_request.maintenance_plan is not None:
            check_and_send_usage_warnings(change_request.maintenance_plan)
            db.session.commit()

        return respond(
            {
                "change_request": serialize_change_request(change_request),
                "deduction": deduction,
            },
            "Change request updated.",
            "admin_change_requests",
        )

    @app.post("/admin/plans/<int:plan_id>/log-hours")
    @login_required
    def log_plan_hours(plan_id: int):
        plan = db.get_or_404(MaintenancePlan, plan_id)
        payload = request_payload()
        hours = _coerce_float(payload.get("hours"))
        description = str(payload.get("description") or "").strip()
        if not hours or hours <= 0 or not description:
            return respond(
                None,
                "Hours and a description are required.",
                "admin_project_detail",
                status=400,
                project_id=plan.project_id,
            )
        deduction = deduct_hours(plan, hours, description, performed_by=g.current_user.name)
        db.session.commit()
        check_and_send_usage_warnings(plan)
        db.session.commit()
        status = 200 if deduction["success"] else 400
        message = (
            f"Logged {format_hours(hours)}."
            if deduction["success"]
            else deduction["error"]
        )
        return respond(
            {"deduction": deduction},
            message,
            "admin_project_detail",
            status=status,
            project_id=plan.project_id,
        )

    @app.post("/admin/plans/<int:plan_id>/close-period")
    @login_required(*EXECUTIVE_ROLES)
    def close_plan_period(plan_id: int):
        plan = db.get_or_404(MaintenancePlan, plan_id)
        result = close_billing_period(plan)
        db.session.commit()
        return respond(
            result,
            f"Billing period closed; {format_hours(result['hours_rolled_over'])} rolled over.",
            "admin_project_detail",
            project_id=plan.project_id,
        )

    @app.post("/admin/hour-packs/process")
    @login_required(*EXECUTIVE_ROLES)
    def process_hour_pack_admin():
        session_id = str(request_payload().get("session_id") or "").strip()
        if not session_id:
            return respond(None, "A checkout session id is required.", "dashboard", status=400)
        if not stripe_active():
            return respond(None, "Stripe is not configured.", "dashboard", status=400)

        try:
            checkout_session = stripe.checkout.Session.retrieve(session_id)
        except StripeError as error:
            return respond(None, describe_stripe_error(error), "dashboard", status=502)

        pack = process_hour_pack_checkout_session(checkout_session)
        if pack is None:
            return respond(None, "That checkout session is not an hour pack purchase.", "dashboard", status=400)
        db.session.commit()
        return respond(
            {"hour_pack_id": pack.id, "hours": pack.hours},
            f"Hour pack recorded ({format_hours(pack.hours)}).",
            "dashboard",
        )

    @app.get("/admin/invoices")
    @login_required
    def admin_invoices():
        query = Invoice.query
        status_filter = request.args.get("status", "").strip().upper()
        if status_filter in INVOICE_STATUS_OPTIONS:
            query = query.filter_by(status=status_filter)
        invoices = query.order_by(Invoice.created_at.desc()).all()
        if wants_json_response():
            return jsonify({"invoices": [serialize_invoice(invoice) for invoice in invoices]})
        organizations = Organization.query.order_by(Organization.name.asc()).all()
        return render_template(
            "admin_invoices.html",
            invoices=invoices,
            organizations=organizations,
            statuses=INVOICE_STATUS_OPTIONS,
        )

    def _invoice_payload_items(payload: dict[str, object]) -> list[dict[str, object]]:
        raw_items = payload.get("items")
        if raw_items is None and payload.get("item_description"):
            raw_items = [
                {
                    "description": payload.get("item_description"),
                    "quantity": payload.get("item_quantity") or 1,
                    "rate": payload.get("item_rate"),
                }
            ]
        return parse_invoice_items(raw_items)

    @app.post("/admin/invoices")
    @login_required("CEO", "CFO", "ADMIN")
    def create_invoice_admin():
        payload = request_payload()
        organization = db.session.get(Organization, _coerce_int(payload.get("organization_id")) or 0)
        if organization is None:
            return respond(None, "Choose an organization to invoice.", "admin_invoices", status=400)

        project = None
        project_id = _coerce_int(payload.get("project_id"))
        if project_id:
            project = Project.query.filter_by(
                id=project_id, organization_id=organization.id
            ).first()
            if project is None:
                return respond(None, "That project belongs to another organization.", "admin_invoices", status=400)

        due_raw = payload.get("due_date")
        due_date_value = parse_iso_date(due_raw)
        if due_raw and due_date_value is None:
            return respond(None, "Please use the YYYY-MM-DD format for due dates.", "admin_invoices", status=400)

        invoice = create_invoice(
            organization,
            str(payload.get("title") or "").strip(),
            _invoice_payload_items(payload),
            project=project,
            description=str(payload.get("description") or "").strip() or None,
            due_date=due_date_value,
            tax_cents=parse_amount_cents(payload.get("tax")) or 0,
        )
        log_activity("INVOICE_CREATED", f"Invoice {invoice.number} created", user=g.current_user)
        db.session.commit()
        return respond(
            {"invoice": serialize_invoice(invoice)},
            f"Invoice {invoice.number} created.",
            "admin_invoices",
            status=201,
        )

    @app.post("/admin/invoices/<int:invoice_id>/update")
    @login_required("CEO", "CFO", "ADMIN")
    def update_invoice_admin(invoice_id: int):
        invoice = db.get_or_404(Invoice, invoice_id)
        payload = request_payload()
        if invoice.status == "PAID":
            return respond(None, "Paid invoices cannot be edited.", "admin_invoices", status=400)

        if "title" in payload:
            title = str(payload["title"] or "").strip()
            if not title:
                return respond(None, "Invoice title is required.", "admin_invoices", status=400)
            invoice.title = title
        if "description" in payload:
            invoice.description = str(payload["description"] or "").strip() or None
        if "due_date" in payload:
            due_date_value = parse_iso_date(payload["due_date"])
            if payload["due_date"] and due_date_value is None:
                return respond(None, "Please use the YYYY-MM-DD format for due dates.", "admin_invoices", status=400)
            invoice.due_date = due_date_value
        if "tax" in payload:
            invoice.tax_cents = parse_amount_cents(payload["tax"]) or 0
        if "status" in payload and payload["status"]:
            status = str(payload["status"]).strip().upper()
            if status not in INVOICE_STATUS_OPTIONS or status == "PAID":
                return respond(None, "Use mark paid to record a payment.", "admin_invoices", status=400)
            invoice.status = status
        if "items" in payload:
            apply_invoice_items(invoice, parse_invoice_items(payload["items"]))
        else:
            invoice.total_cents = invoice.subtotal_cents + (invoice.tax_cents or 0)

        db.session.commit()
        return respond({"invoice": serialize_invoice(invoice)}, "Invoice updated.", "admin_invoices")

    @app.post("/admin/invoices/<int:invoice_id>/delete")
    @login_required("CEO", "CFO")
    def delete_invoice_admin(invoice_id: int):
        invoice = db.get_or_404(Invoice, invoice_id)
        if invoice.status == "PAID":
            return respond(None, "Paid invoices cannot be deleted.", "admin_invoices", status=400)
        db.session.delete(invoice)
        db.session.commit()
        return respond(None, "Invoice deleted.", "admin_invoices")

    @app.post("/admin/invoices/<int:invoice_id>/mark-paid")
    @login_required("CEO", "CFO", "ADMIN")
    def mark_invoice_paid_admin(invoice_id: int):
        invoice = db.get_or_404(Invoice, invoice_id)
        changed = mark_invoice_paid(
            invoice, method=str(request_payload().get("method") or "manual")
        )
        db.session.commit()
        message = "Invoice marked as paid." if changed else "Invoice was already paid."
        return respond({"invoice": serialize_invoice(invoice)}, message, "admin_invoices")

    @app.post("/admin/invoices/<int:invoice_id>/send")
    @login_required("CEO", "CFO", "ADMIN")
    def send_invoice_admin(invoice_id: int):
        invoice = db.get_or_404(Invoice, invoice_id)
        try:
            create_stripe_invoice(invoice)
        except StripeError as error:
            db.session.rollback()
            app.logger.exception("Stripe invoice creation failed for %s", invoice.number)
            return respond(
                None,
                f"Stripe could not send the invoice: {describe_stripe_error(error)}",
                "admin_invoices",
                status=502,
            )
        log_activity("INVOICE_SENT", f"Invoice {invoice.number} sent", user=g.current_user)
        db.session.commit()
        return respond({"invoice": serialize_invoice(invoice)}, f"Invoice {invoice.number} sent.", "admin_invoices")

    @app.post("/admin/invoices/mark-overdue")
    @login_required("CEO", "CFO", "ADMIN")
    def mark_overdue_admin():
        updated = mark_overdue_invoices()
        db.session.commit()
        return respond({"updated": updated}, f"{updated} invoices marked overdue.", "admin_invoices")

    @app.post("/admin/settings/stripe")
    @login_required("CEO", "ADMIN")
    def configure_stripe_settings():
        secret_key = (request.form.get("secret_key", "") or "").strip()
        publishable_key = (request.form.get("publishable_key", "") or "").strip()
        webhook_secret = (request.form.get("webhook_secret", "") or "").strip()

        config = StripeConfig.query.first()
        if config is None:
            config = StripeConfig()
            db.session.add(config)

        config.secret_key = secret_key or None
        config.publishable_key = publishable_key or None
        config.webhook_secret = webhook_secret or None
        db.session.commit()

        current_app.config["STRIPE_SECRET_KEY"] = config.secret_key
        current_app.config["STRIPE_PUBLISHABLE_KEY"] = config.publishable_key
        current_app.config["STRIPE_WEBHOOK_SECRET"] = config.webhook_secret
        init_stripe(current_app)

        if config.secret_key and config.publishable_key:
            flash("Stripe configuration saved. Online payments are ready.", "success")
        else:
            flash(
                "Stripe configuration saved. Provide both API keys to enable payments.",
                "info",
            )
        return redirect(url_for("dashboard"))

    @app.post("/admin/settings/notifications")
    @login_required("CEO", "ADMIN")
    def configure_notifications():
        config = ensure_notification_configuration()
        form = request.form
        config.smtp_host = form.get("smtp_host", "").strip() or "smtp.office365.com"
        port = _coerce_int(form.get("smtp_port"))
        config.smtp_port = port if port and 0 < port < 65536 else 587
        config.use_tls = is_truthy(form.get("use_tls"))
        config.from_email = form.get("from_email", "").strip() or None
        config.from_name = form.get("from_name", "").strip() or None
        config.reply_to_email = form.get("reply_to_email", "").strip() or None
        config.smtp_username = form.get("smtp_username", "").strip() or None
        password = form.get("smtp_password", "")
        if password:
            config.smtp_password = password
        for field in (
            "notify_new_leads",
            "notify_change_requests",
            "notify_billing",
            "notify_usage_warnings",
        ):
            setattr(config, field, is_truthy(form.get(field)))
        db.session.commit()
        flash("Notification settings saved.", "success")
        return redirect(url_for("dashboard"))

    @app.route("/portal")
    @client_login_required
    def portal_dashboard(user: User):
        organization_ids = user_organization_ids(user) or [-1]
        projects = (
            Project.query.filter(Project.organization_id.in_(organization_ids))
            .order_by(Project.created_at.desc())
            .all()
        )
        invoices = (
            Invoice.query.filter(
                Invoice.organization_id.in_(organization_ids),
                Invoice.status != "DRAFT",
            )
            .order_by(Invoice.created_at.desc())
            .all()
        )
        change_requests = (
            ChangeRequest.query.filter(
                ChangeRequest.project_id.in_([project.id for project in projects] or [-1])
            )
            .order_by(ChangeRequest.created_at.desc())
            .limit(10)
            .all()
        )
        plans = [
            (project, get_hours_balance(project.maintenance_plan))
            for project in projects
            if project.maintenance_plan is not None
        ]
        return render_template(
            "portal_dashboard.html",
            user=user,
            projects=projects,
            invoices=invoices,
            change_requests=change_requests,
            plans=plans,
        )

    @app.get("/portal/projects")
    @client_login_required
    def portal_projects(user: User):
        projects = (
            Project.query.filter(
                Project.organization_id.in_(user_organization_ids(user) or [-1])
            )
            .order_by(Project.created_at.desc())
            .all()
        )
        return jsonify({"projects": [serialize_project(project) for project in projects]})

    @app.get("/portal/projects/<int:project_id>")
    @client_login_required
    def portal_project_detail(user: User, project_id: int):
        project = client_project_or_404(user, project_id)
        plan = project.maintenance_plan
        if wants_json_response():
            return jsonify(
                {
                    "project": serialize_project(project),
                    "plan": serialize_plan(plan) if plan else None,
                    "change_requests": [
                        serialize_change_request(change_request)
                        for change_request in project.change_requests
                    ],
                }
            )
        return render_template(
            "portal_project.html",
            project=project,
            plan=plan,
            balance=get_hours_balance(plan) if plan else None,
            categories=CHANGE_REQUEST_CATEGORY_OPTIONS,
            priorities=CHANGE_REQUEST_PRIORITY_OPTIONS,
            urgency_fees=URGENCY_FEES,
        )

    @app.get("/portal/change-requests")
    @client_login_required
    def portal_change_requests(user: User):
        change_requests = (
            ChangeRequest.query.join(Project)
            .filter(Project.organization_id.in_(user_organization_ids(user) or [-1]))
            .order_by(ChangeRequest.created_at.desc())
            .all()
        )
        return jsonify(
            {
                "change_requests": [
                    serialize_change_request(change_request)
                    for change_request in change_requests
                ]
            }
        )

    @app.post("/portal/projects/<int:project_id>/change-requests")
    @client_login_required
    def portal_submit_change_request(user: User, project_id: int):
        project = client_project_or_404(user, project_id)
        change_request, allowance = submit_change_request(user, project, request_payload())
        db.session.commit()

        notify_staff(
            f"New change request: {change_request.title}",
            (
                f"Project: {project.name}\n"
                f"Requested by: {user.name} <{user.email}>\n"
                f"Priority: {change_request.priority}\n"
                f"Category: {change_request.category}\n"
                f"Estimated hours: {change_request.estimated_hours or '-'}\n\n"
                f"{change_request.description}"
            ),
            category="change_request",
        )

        message = "Change request submitted."
        if allowance.get("reason"):
            message = f"{message} {allowance['reason']}."
        return respond(
            {"change_request": serialize_change_request(change_request)},
            message,
            "portal_project_detail",
            status=201,
            project_id=project.id,
        )

    @app.get("/portal/invoices")
    @client_login_required
    def portal_invoices(user: User):
        invoices = (
            Invoice.query.filter(
                Invoice.organization_id.in_(user_organization_ids(user) or [-1]),
                Invoice.status != "DRAFT",
            )
            .order_by(Invoice.created_at.desc())
            .all()
        )
        return jsonify({"invoices": [serialize_invoice(invoice) for invoice in invoices]})

    @app.post("/portal/invoices/<int:invoice_id>/pay")
    @client_login_required
    def portal_pay_invoice(user: User, invoice_id: int):
        invoice = Invoice.query.filter(
            Invoice.id == invoice_id,
            Invoice.organization_id.in_(user_organization_ids(user) or [-1]),
        ).first()
        if invoice is None:
            return respond(None, "We couldn't find that invoice.", "portal_dashboard", status=404)
        if invoice.status == "PAID":
            return respond(None, "This invoice has already been paid.", "portal_dashboard", status=400)
        if invoice.status in {"DRAFT", "CANCELLED"}:
            return respond(None, "This invoice is not open for payment.", "portal_dashboard", status=400)
        if not stripe_active():
            return respond(
                None,
                "Online payments are unavailable right now. Please contact us.",
                "portal_dashboard",
                status=503,
            )

        try:
            customer_id = ensure_stripe_customer(invoice.organization)
            checkout_session = stripe.checkout.Session.create(
                mode="payment",
                customer=customer_id,
                line_items=[
                    {
                        "price_data": {
                            "currency": invoice.currency,
                            "unit_amount": invoice.total_cents,
                            "product_data": {"name": f"{invoice.number}: {invoice.title}"},
                        },
                        "quantity": 1,
                    }
                ],
                metadata={"type": "invoice", "invoice_id": str(invoice.id)},
                success_url=site_url(
                    url_for("portal_invoice_success", invoice_id=invoice.id)
                )
                + "?session_id={CHECKOUT_SESSION_ID}",
                cancel_url=site_url(url_for("portal_dashboard")),
            )
        except StripeError as error:
            db.session.rollback()
            return respond(
                None,
                f"We couldn't start the payment: {describe_stripe_error(error)}",
                "portal_dashboard",
                status=502,
            )

        invoice.stripe_checkout_session_id = checkout_session.id
        db.session.commit()
        if wants_json_response():
            return jsonify({"url": checkout_session.url, "session_id": checkout_session.id})
        return redirect(checkout_session.url, code=303)

    @app.get("/portal/invoices/<int:invoice_id>/success")
    @client_login_required
    def portal_invoice_success(user: User, invoice_id: int):
        invoice = Invoice.query.filter(
            Invoice.id == invoice_id,
            Invoice.organization_id.in_(user_organization_ids(user) or [-1]),
        ).first_or_404()
        session_id = request.args.get("session_id", "").strip()
        if invoice.status != "PAID" and session_id and stripe_active():
            try:
                checkout_session = stripe.checkout.Session.retrieve(session_id)
            except StripeError as error:
                app.logger.warning("Could not verify checkout %s: %s", session_id, error)
            else:
                metadata = _metadata_dict(checkout_session)
                if (
                    metadata.get("invoice_id") == str(invoice.id)
                    and getattr(checkout_session, "payment_status", None) == "paid"
                ):
                    mark_invoice_paid(
                        invoice,
                        method="stripe",
                        stripe_payment_id=_stripe_id(
                            getattr(checkout_session, "payment_intent", None)
                        ),
                    )
                    db.session.commit()
        if invoice.status == "PAID":
            flash(f"Thank you! Invoice {invoice.number} is paid.", "success")
        else:
            flash("Your payment is processing. We'll email a receipt once it clears.", "info")
        return redirect(url_for("portal_dashboard"))

    @app.get("/portal/projects/<int:project_id>/plan")
    @client_login_required
    def portal_plan(user: User, project_id: int):
        project = client_project_or_404(user, project_id)
        if project.maintenance_plan is None:
            return jsonify({"plan": None, "recommended_tier": "ESSENTIALS"})
        plan = project.maintenance_plan
        logs = MaintenanceLog.query.filter_by(plan_id=plan.id).all()
        average_hours = sum(log.hours_spent for log in logs) / max(1, len({
            as_utc(log.performed_at).strftime("%Y-%m") for log in logs
        }))
        return jsonify(
            {
                "plan": serialize_plan(plan),
                "recommended_tier": get_recommended_tier(average_hours, 0),
                "upgrade": calculate_upgrade_savings(
                    plan.tier, get_hours_balance(plan)["overage_hours"], 0
                ),
            }
        )

    @app.post("/portal/projects/<int:project_id>/plan/subscribe")
    @client_login_required
    def portal_subscribe_plan(user: User, project_id: int):
        project = client_project_or_404(user, project_id)
        payload = request_payload()
        tier_id = str(payload.get("tier") or "").strip().upper()
        billing_cycle = str(payload.get("billing_cycle") or "MONTHLY").strip().upper()

        if project.maintenance_plan is not None and project.maintenance_plan.status == "ACTIVE":
            return respond(
                None,
                "This project already has an active plan.",
                "portal_project_detail",
                status=400,
                project_id=project.id,
            )
        plan = ensure_maintenance_plan(project, tier_id, billing_cycle)

        if not stripe_active():
            db.session.rollback()
            return respond(None, "Online billing is unavailable right now.", "portal_project_detail", status=503, project_id=project.id)
        price_id = stripe_price_id(plan.tier, plan.billing_cycle)
        if not price_id:
            db.session.rollback()
            return respond(None, "That plan is not available for online checkout yet.", "portal_project_detail", status=400, project_id=project.id)

        db.session.flush()
        metadata = {
            "type": "maintenance-subscription",
            "plan_id": str(plan.id),
            "project_id": str(project.id),
            "tier": plan.tier,
            "billing_cycle": plan.billing_cycle,
        }
        try:
            customer_id = ensure_stripe_customer(project.organization)
            checkout_session = stripe.checkout.Session.create(
                mode="subscription",
                customer=customer_id,
                line_items=[{"price": price_id, "quantity": 1}],
                metadata=metadata,
                subscription_data={"metadata": metadata},
                success_url=site_url(url_for("portal_project_detail", project_id=project.id))
                + "?session_id={CHECKOUT_SESSION_ID}",
                cancel_url=site_url(url_for("portal_project_detail", project_id=project.id)),
            )
        except StripeError as error:
            db.session.rollback()
            return respond(
                None,
                f"We couldn't start checkout: {describe_stripe_error(error)}",
                "portal_project_detail",
                status=502,
                project_id=project.id,
            )

        plan.stripe_checkout_session_id = checkout_session.id
        db.session.commit()
        if wants_json_response():
            return jsonify({"url": checkout_session.url, "session_id": checkout_session.id})
        return redirect(checkout_session.url, code=303)

    @app.post("/portal/projects/<int:project_id>/plan/verify")
    @client_login_required
    def portal_verify_plan(user: User, project_id: int):
        project = client_project_or_404(user, project_id)
        plan = project.maintenance_plan
        if plan is None:
            return respond(None, "This project has no maintenance plan.", "portal_project_detail", status=404, project_id=project.id)
        if not stripe_active():
            return respond(None, "Online billing is unavailable right now.", "portal_project_detail", status=503, project_id=project.id)

        try:
            if plan.stripe_subscription_id:
                subscription = stripe.Subscription.retrieve(plan.stripe_subscription_id)
                _handle_subscription_updated(None, subscription)
            else:
                session_id = str(request_payload().get("session_id") or plan.stripe_checkout_session_id or "")
                if not session_id:
                    return respond(None, "No checkout to verify yet.", "portal_project_detail", status=400, project_id=project.id)
                checkout_session = stripe.checkout.Session.retrieve(session_id)
                if (
                    getattr(checkout_session, "status", None) == "complete"
                    and getattr(checkout_session, "payment_status", None) in {"paid", "no_payment_required"}
                ):
                    activate_maintenance_plan(
                        plan,
                        subscription_id=_stripe_id(getattr(checkout_session, "subscription", None)),
                        checkout_session_id=checkout_session.id,
                    )
        except StripeError as error:
            db.session.rollback()
            return respond(
                None,
                f"We couldn't verify the payment: {describe_stripe_error(error)}",
                "portal_project_detail",
                status=502,
                project_id=project.id,
            )

        db.session.commit()
        return respond({"plan": serialize_plan(plan)}, f"Plan status: {plan.status.lower()}.", "portal_project_detail", project_id=project.id)

    @app.post("/portal/projects/<int:project_id>/plan/change-tier")
    @client_login_required
    def portal_change_tier(user: User, project_id: int):
        project = client_project_or_404(user, project_id)
        plan = project.maintenance_plan
        if plan is None:
            return respond(None, "This project has no maintenance plan.", "portal_project_detail", status=404, project_id=project.id)
        try:
            change_plan_tier(plan, str(request_payload().get("tier") or "").strip().upper())
        except StripeError as error:
            db.session.rollback()
            return respond(
                None,
                f"We couldn't change your plan: {describe_stripe_error(error)}",
                "portal_project_detail",
                status=502,
                project_id=project.id,
            )
        log_activity("PLAN_TIER_CHANGED", f"{project.name} moved to {plan.tier}", user=user)
        db.session.commit()
        return respond({"plan": serialize_plan(plan)}, f"Plan changed to {plan.tier_config['name']}.", "portal_project_detail", project_id=project.id)

    @app.post("/portal/projects/<int:project_id>/plan/cancel")
    @client_login_required
    def portal_cancel_plan(user: User, project_id: int):
        project = client_project_or_404(user, project_id)
        plan = project.maintenance_plan
        if plan is None:
            return respond(None, "This project has no maintenance plan.", "portal_project_detail", status=404, project_id=project.id)
        try:
            cancel_maintenance_plan(plan)
        except StripeError as error:
            db.session.rollback()
            return respond(
                None,
                f"We couldn't cancel your plan: {describe_stripe_error(error)}",
                "portal_project_detail",
                status=502,
                project_id=project.id,
            )
        db.session.commit()
        message = (
            "Your plan will end at the close of the current billing period."
            if plan.cancel_at_period_end
            else "Your plan has been cancelled."
        )
        return respond({"plan": serialize_plan(plan, include_balance=False)}, message, "portal_project_detail", project_id=project.id)

    @app.post("/portal/projects/<int:project_id>/plan/on-demand")
    @client_login_required
    def portal_on_demand_settings(user: User, project_id: int):
        project = client_project_or_404(user, project_id)
        plan = project.maintenance_plan
        if plan is None:
            return respond(None, "This project has no maintenance plan.", "portal_project_detail", status=404, project_id=project.id)
        payload = request_payload()
        if "on_demand_enabled" in payload:
            plan.on_demand_enabled = is_truthy(payload["on_demand_enabled"])
        if "daily_request_limit" in payload:
            limit = _coerce_int(payload["daily_request_limit"])
            if limit is None or not (
                ON_DEMAND_SETTINGS["min_daily_limit"]
                <= limit
                <= ON_DEMAND_SETTINGS["max_daily_limit"]
            ):
                return respond(
                    None,
                    "Daily limits must be between "
                    f"{ON_DEMAND_SETTINGS['min_daily_limit']} and {ON_DEMAND_SETTINGS['max_daily_limit']}.",
                    "portal_project_detail",
                    status=400,
                    project_id=project.id,
                )
            plan.daily_request_limit = limit
        db.session.commit()
        return respond({"plan": serialize_plan(plan, include_balance=False)}, "On-demand settings saved.", "portal_project_detail", project_id=project.id)

    @app.post("/portal/projects/<int:project_id>/hour-packs")
    @client_login_required
    def portal_buy_hour_pack(user: User, project_id: int):
        project = client_project_or_404(user, project_id)
        plan = project.maintenance_plan
        if plan is None or plan.status != "ACTIVE":
            return respond(None, "An active maintenance plan is required to buy hours.", "portal_project_detail", status=400, project_id=project.id)
        pack = get_hour_pack(str(request_payload().get("pack_id") or ""))
        if pack is None:
            return respond(None, "Choose a valid hour pack.", "portal_project_detail", status=400, project_id=project.id)
        if not stripe_active():
            return respond(None, "Online billing is unavailable right now.", "portal_project_detail", status=503, project_id=project.id)

        try:
            customer_id = ensure_stripe_customer(project.organization)
            checkout_session = stripe.checkout.Session.create(
                mode="payment",
                customer=customer_id,
                line_items=[
                    {
                        "price_data": {
                            "currency": STRIPE_DEFAULT_CURRENCY,
                            "unit_amount": pack["cost"],
                            "product_data": {
                                "name": f"{pack['name']} ({format_hours(pack['hours'])})"
                            },
                        },
                        "quantity": 1,
                    }
                ],
                metadata={
                    "type": "hour-pack",
                    "pack_id": pack["id"],
                    "hours": str(pack["hours"]),
                    "expiration_days": str(pack["expiry_days"]),
                    "plan_id": str(plan.id),
                    "project_id": str(project.id),
                    "user_id": str(user.id),
                    "organization_id": str(project.organization_id),
                },
                success_url=site_url(url_for("portal_hour_pack_success"))
                + "?session_id={CHECKOUT_SESSION_ID}",
                cancel_url=site_url(url_for("portal_project_detail", project_id=project.id)),
            )
        except StripeError as error:
            db.session.rollback()
            return respond(
                None,
                f"We couldn't start checkout: {describe_stripe_error(error)}",
                "portal_project_detail",
                status=502,
                project_id=project.id,
            )

        db.session.commit()
        if wants_json_response():
            return jsonify({"url": checkout_session.url, "session_id": checkout_session.id})
        return redirect(checkout_session.url, code=303)

    @app.get("/portal/hour-packs/success")
    @client_login_required
    def portal_hour_pack_success(user: User):
        session_id = request.args.get("session_id", "").strip()
        if session_id and stripe_active():
            try:
                checkout_session = stripe.checkout.Session.retrieve(session_id)
                metadata = _metadata_dict(checkout_session)
                project_id = _coerce_int(metadata.get("project_id"))
                if project_id:
                    client_project_or_404(user, project_id)
                process_hour_pack_checkout_session(checkout_session)
                db.session.commit()
            except StripeError as error:
                db.session.rollback()
                app.logger.warning("Could not verify hour pack checkout %s: %s", session_id, error)
            except BillingError as error:
                db.session.rollback()
                app.logger.info("Hour pack checkout %s pending: %s", session_id, error)
        flash("Thanks! Your hours will appear as soon as the payment clears.", "success")
        return redirect(url_for("portal_dashboard"))

    @app.post("/portal/billing-portal")
    @client_login_required
    def portal_billing_portal(user: User):
        organization = next(iter(user.organizations), None)
        if organization is None or not organization.stripe_customer_id:
            return respond(None, "No billing account exists yet.", "portal_dashboard", status=400)
        if not stripe_active():
            return respond(None, "Online billing is unavailable right now.", "portal_dashboard", status=503)
        try:
            portal_session = stripe.billing_portal.Session.create(
                customer=organization.stripe_customer_id,
                return_url=site_url(url_for("portal_dashboard")),
            )
        except StripeError as error:
            return respond(
                None,
                f"We couldn't open the billing portal: {describe_stripe_error(error)}",
                "portal_dashboard",
                status=502,
            )
        if wants_json_response():
            return jsonify({"url": portal_session.url})
        return redirect(portal_session.url, code=303)

    @app.post("/stripe/webhook")
    def stripe_webhook():
        payload = request.data
        sig_header = request.headers.get("Stripe-Signature")
        webhook_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")

        try:
            if webhook_secret:
                if not sig_header:
                    return jsonify({"error": "Missing Stripe-Signature header"}), 400
                event = stripe.Webhook.construct_event(
                    payload, sig_header, webhook_secret
                )
            elif current_app.config.get("STRIPE_WEBHOOK_ALLOW_UNSIGNED"):
                json_payload = json.loads(payload.decode("utf-8") or "{}")
                event = stripe.Event.construct_from(json_payload, stripe.api_key)
            else:
                app.logger.error("Stripe webhook received but no webhook secret is configured")
                return jsonify({"error": "Webhook secret not configured"}), 500
        except (ValueError, SignatureVerificationError, StripeError) as error:
            return jsonify({"error": str(error)}), 400

        event_id = getattr(event, "id", None)
        event_type = getattr(event, "type", "")
        if event_id and StripeWebhookEvent.query.filter_by(stripe_event_id=event_id).first():
            return jsonify({"status": "duplicate"}), 200

        try:
            handled = handle_stripe_event(event)
            if not handled:
                db.session.rollback()
                app.logger.info("Stripe event %s (%s) acknowledged without changes", event_id, event_type)
            if event_id:
                db.session.add(
                    StripeWebhookEvent(
                        stripe_event_id=event_id, event_type=event_type, handled=handled
                    )
                )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            app.logger.exception("Database error while processing Stripe event %s", event_id)
            return jsonify({"error": "Webhook processing failed"}), 500

        if handled:
            invalidate_dashboard_overview_cache()
            return jsonify({"status": "ok"}), 200
        return jsonify({"status": "ignored"}), 200


def register_cli(app: Flask) -> None:
    @app.cli.command("init-db")
    def init_db_command():
        """Create tables and seed default settings."""
        db.create_all()
        apply_stripe_config_from_database(app)
        ensure_default_admin_user()
        ensure_notification_configuration()
        click.echo("Database initialized.")

    @app.cli.command("close-billing-periods")
    @click.option("--all", "close_all", is_flag=True, help="Close every active plan now.")
    def close_billing_periods_command(close_all: bool):
        """Roll over and reset plans whose billing period has ended."""
        now = utcnow()
        closed = 0
        for plan in MaintenancePlan.query.filter_by(status="ACTIVE").all():
            period_end = as_utc(plan.current_period_end)
            if close_all or period_end is None or period_end <= now:
                result = close_billing_period(plan)
                closed += 1
                app.logger.info(
                    "Closed billing period for plan %s (%s hours rolled over, %s expired)",
                    plan.id,
                    result["hours_rolled_over"],
                    result["hours_expired"],
                )
        db.session.commit()
        click.echo(f"Closed {closed} billing periods.")

    @app.cli.command("send-usage-warnings")
    def send_usage_warnings_command():
        """Email usage warnings for every active plan."""
        total = 0
        for plan in MaintenancePlan.query.filter_by(status="ACTIVE").all():
            total += len(check_and_send_usage_warnings(plan))
        db.session.commit()
        click.echo(f"Sent {total} usage warnings.")

    @app.cli.command("expire-hour-packs")
    def expire_hour_packs_command():
        """Deactivate hour packs past their expiry date."""
        expired = expire_hour_packs()
        overdue = mark_overdue_invoices()
        db.session.commit()
        click.echo(f"Expired {expired} hour packs; {overdue} invoices now overdue.")


app = create_app()


if __name__ == "__main__":
    port = 5000
    port_env = os.environ.get("PORT")
    if port_env:
        try:
            port = int(port_env)
        except ValueError:
            app.logger.warning("Ignoring invalid PORT value: %s", port_env)

    app.run(host="0.0.0.0", port=port, debug=is_truthy(os.environ.get("FLASK_DEBUG")))
