"""Jinja2 rendering of reminder messages and license summaries."""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Sequence

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from .config import DunningConfig
from .dto import BillingFrequency, License, LicenseStatus, parse_datetime
from .ledger import PLACEHOLDER, format_currency, round_money
from .policies import GRACE_PREFIX

TEMPLATE_DIR = Path(__file__).parent / "templates"

STATUS_LABELS = {
    LicenseStatus.PAID: "Pagado",
    LicenseStatus.PENDING: "Pendiente",
    LicenseStatus.OVERDUE: "Vencido",
    LicenseStatus.CANCELLED: "Cancelado",
}
FREQUENCY_LABELS = {BillingFrequency.MONTHLY: "Mensual", BillingFrequency.ANNUAL: "Anual"}


@dataclass
class LicenseSummary:
    """Display values for one license inside a reminder."""

    label: str
    amount: str
    outstanding_value: Decimal
    outstanding: str
    next_payment: str
    grace_days: int
    late_text: str


@dataclass
class RenderedEmail:
    subject: str
    text: str
    html: str


def format_date(value: Any) -> str:
    """Render a date as dd/mm/yyyy; missing or malformed values render a placeholder."""
    try:
        parsed = parse_datetime(value)
    except (ValueError, TypeError):
        return PLACEHOLDER
    if parsed is None:
        return PLACEHOLDER
    return parsed.strftime("%d/%m/%Y")


def _first_positive(*values: Decimal | None) -> Decimal:
    for value in values:
        if value is not None and value > 0:
            return value
    return Decimal("0")


def _percentage_text(value: Decimal) -> str:
    return f"{value.normalize():f}"


def late_fee_text(license: License, currency: str) -> str:
    """Late fee as shown to the client: ``10% (S/ 20.00)`` or a plain amount."""
    pct = license.late_fee_percentage
    if pct is not None:
        amount = license.late_fee_amount
        if amount is None and license.amount:
            amount = round_money(license.amount * pct / Decimal(100))
        return f"{_percentage_text(pct)}% ({format_currency(amount, currency)})"
    return format_currency(license.late_fee_amount, currency)


def summarize_license(license: License, currency_fallback: str) -> LicenseSummary:
    currency = license.currency or currency_fallback
    outstanding_value = _first_positive(
        license.outstanding_balance, license.prorated_amount_due, license.amount
    )
    label_pieces = [
        license.service_type or "Servicio",
        license.domain or license.license_key or PLACEHOLDER,
    ]
    return LicenseSummary(
        label=" • ".join(piece for piece in label_pieces if piece),
        amount=format_currency(license.amount, currency),
        outstanding_value=outstanding_value,
        outstanding=format_currency(outstanding_value, currency),
        next_payment=format_date(license.next_payment_due),
        grace_days=license.grace_period_days or 0,
        late_text=late_fee_text(license, currency),
    )


class TemplateEngine:
    """Jinja2 template engine for chat reminders and email summaries."""

    def __init__(self, config: DunningConfig, template_dir: Path | str | None = None):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.template_dir = Path(template_dir) if template_dir else TEMPLATE_DIR

        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            undefined=StrictUndefined,
            autoescape=select_autoescape(enabled_extensions=("html",), default=False),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["money"] = format_currency
        self.env.filters["datefmt"] = format_date
        self.env.globals["company_name"] = config.company_name
        self.env.globals["support_email"] = config.support_email
        self.env.globals["payment_guide_url"] = config.payment_guide_url

        self.stage_intros = self._load_stage_intros()

    def _load_stage_intros(self) -> dict[str, str]:
        """Load the stage -> intro line table."""
        intro_file = self.template_dir / "stage_intros.yaml"
        with open(intro_file, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Invalid stage intro file: {intro_file}")
        return {str(key): str(value) for key, value in data.items()}

    def stage_intro(self, stage: str | None, custom_intro: str | None = None) -> str:
        """Opening line for a reminder; an explicit intro wins over the stage table."""
        if custom_intro:
            return custom_intro
        if stage and stage in self.stage_intros:
            return self.stage_intros[stage]
        if stage and stage.startswith(GRACE_PREFIX):
            return self.stage_intros["grace_default"]
        return self.stage_intros["default"]

    def render_chat_reminder(
        self,
        licenses: Sequence[License],
        *,
        client_label: str,
        doc_hint: str,
        stage: str | None = None,
        custom_intro: str | None = None,
        custom_outro: str | None = None,
        manual_message: str | None = None,
        currency_fallback: str | None = None,
    ) -> tuple[str, Decimal]:
        """Render a chat reminder.

        Returns:
            Tuple of (message content, total outstanding)
        """
        currency = currency_fallback or self.config.default_currency
        items = [summarize_license(lic, currency) for lic in licenses]
        total = sum((item.outstanding_value for item in items), Decimal("0"))

        if manual_message:
            template = self.env.get_template("chat_manual.jinja.txt")
            content = template.render(manual_message=manual_message, doc_hint=doc_hint)
        else:
            template = self.env.get_template("chat_reminder.jinja.txt")
            content = template.render(
                client_label=client_label,
                intro=self.stage_intro(stage, custom_intro),
                items=items,
                total=format_currency(total, currency),
                custom_outro=custom_outro,
                doc_hint=doc_hint,
            )
        self.logger.debug(
            "chat_reminder_rendered",
            extra={"stage": stage, "license_count": len(items), "manual": bool(manual_message)},
        )
        return content.rstrip(), total

    def render_email_summary(self, license: License) -> RenderedEmail:
        """Render the license summary email (plain text and HTML)."""
        currency = license.currency or self.config.default_currency
        summary = summarize_license(license, currency)
        prorated = None
        if license.prorated_amount_due is not None and license.prorated_days:
            prorated = (
                f"{format_currency(license.prorated_amount_due, currency)} "
                f"por {license.prorated_days} de {license.billing_cycle_days or '—'} días"
            )
        context = {
            "license": license,
            "amount": summary.amount,
            "frequency": FREQUENCY_LABELS.get(license.frequency, PLACEHOLDER),
            "prorated": prorated,
            "next_payment": summary.next_payment,
            "grace_days": summary.grace_days,
            "late_text": summary.late_text,
            "outstanding": summary.outstanding,
            "start": format_date(license.start_date),
            "end": format_date(license.end_date),
            "status": STATUS_LABELS.get(license.status, license.status.value),
        }
        rows = [
            ("Licencia", license.license_key),
            ("Servicio", license.service_type or PLACEHOLDER),
            ("Dominio", license.domain or PLACEHOLDER),
            ("Monto", context["amount"]),
            ("Frecuencia", context["frequency"]),
        ]
        if prorated:
            rows.append(("Prorrateo", prorated))
        rows.extend(
            [
                ("Próximo pago", context["next_payment"]),
                ("Días de gracia", context["grace_days"]),
                ("Mora", context["late_text"]),
                ("Saldo pendiente", context["outstanding"]),
                ("Vigencia", f"{context['start']} - {context['end']}"),
                ("Estado", context["status"]),
            ]
        )
        text = self.env.get_template("email_summary.jinja.txt").render(**context)
        html = self.env.get_template("email_summary.jinja.html").render(rows=rows, **context)
        subject = f"Detalles de tu licencia {license.license_key or ''}".strip()
        return RenderedEmail(subject=subject, text=text, html=html)


def reminder_date_today(now: datetime) -> str:
    """Default reminder date: the UTC calendar date of ``now``."""
    return parse_datetime(now).date().isoformat()
