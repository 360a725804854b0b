from __future__ import annotations

import hashlib
import json
import math
import re
import secrets
from collections.abc import Callable
from datetime import datetime, timezone, tzinfo
from typing import Any, get_args

from minicrm.backup.references import ReferenceIndex, classify_reference
from minicrm.backup.schemas import (
    ActivityListRecord,
    ActivityPriority,
    ActivityRecord,
    ActivityStatus,
    BudgetClient,
    BudgetItem,
    BudgetRecord,
    BudgetStatus,
    ClientRecord,
    ClientRef,
    LedgerEntryRecord,
    MeetingRecord,
    MeetingType,
    MonthlyPaymentRecord,
    ReportCurrency,
    ReportItem,
    ReportNotes,
    ReportPeriod,
    ReportPlatform,
    ReportRecord,
    ReportSection,
    ReportShare,
    ReportStatus,
    ReportTemplate,
    ServiceItem,
    TaskPriority,
    TaskRecord,
    TaskStatus,
    TeamComment,
    TeamMemberRecord,
    UserRecord,
)

_BARE_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_HOUR_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


class RecordRejected(ValueError):
    """A record misses a hard requirement and must be dropped."""


def coerce_bool(value: Any) -> bool:
    if value is True:
        return True
    if type(value) is int and value == 1:
        return True
    return value == "true"


def clean_str(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def clean_str_list(value: Any, *, lower: bool = False) -> list[str]:
    value = unwrap_field(value)
    if isinstance(value, str):
        value = [item for item in value.split(",")]
    if not isinstance(value, list):
        return []
    result: list[str] = []
    for item in value:
        text = clean_str(item)
        if text is None:
            continue
        if lower:
            text = text.lower()
        if text not in result:
            result.append(text)
    return result


def parse_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip().replace(",", ".")) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_amount(value: Any) -> float:
    number = parse_float(value)
    return number if number is not None else 0.0


def parse_int(value: Any) -> int | None:
    number = parse_float(value)
    if number is None:
        return None
    return int(number)


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def parse_datetime(value: Any, tz: tzinfo) -> datetime | None:
    """Parse backup dates.

    A bare ``YYYY-MM-DD`` is local noon in ``tz``: midnight UTC would render
    as the previous day west of Greenwich. Numbers are epoch milliseconds.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, dict) and "$date" in value:
        return parse_datetime(value["$date"], tz)
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=tz)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    bare = _BARE_DATE_RE.match(text)
    if bare:
        try:
            return datetime(int(bare.group(1)), int(bare.group(2)), int(bare.group(3)), 12, 0, tzinfo=tz)
        except ValueError:
            return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=tz)


def unwrap_encoded(value: Any) -> Any:
    """Decode a value serialized as a JSON string, up to two levels.

    Raises ``json.JSONDecodeError`` when the first level is not JSON. When the
    second level fails the first decode is kept.
    """
    if not isinstance(value, str):
        return value
    first = json.loads(value)
    if not isinstance(first, str):
        return first
    try:
        return json.loads(first)
    except ValueError:
        return first


def unwrap_field(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    stripped = value.strip()
    if not stripped or stripped[0] not in "[{\"":
        return value
    try:
        return unwrap_encoded(stripped)
    except ValueError:
        return value


def mint_key(prefix: str, *parts: Any) -> str:
    seed = "|".join("" if part is None else str(part).strip().lower() for part in parts)
    digest = hashlib.sha1(seed.encode("utf-8")).hexdigest()[:10]
    return f"{prefix}-{digest}-{secrets.token_hex(3)}"


def _enum(value: Any, allowed: tuple[str, ...], default: str) -> str:
    text = clean_str(value)
    if text is not None and text.lower() in allowed:
        return text.lower()
    return default


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def normalize_client(raw: dict[str, Any], tz: tzinfo) -> ClientRecord:
    nombre = clean_str(raw.get("nombre"))
    if nombre is None:
        raise RecordRejected("client has no usable name")
    email = clean_str(raw.get("email"))

    services: list[ServiceItem] = []
    raw_services = unwrap_field(raw.get("servicios"))
    for item in raw_services if isinstance(raw_services, list) else []:
        if isinstance(item, dict):
            service_name = clean_str(item.get("nombre"))
            if service_name is not None:
                services.append(ServiceItem(nombre=service_name, precio=parse_float(item.get("precio"))))
        elif clean_str(item) is not None:
            services.append(ServiceItem(nombre=clean_str(item) or ""))

    return ClientRecord(
        crm_id=clean_str(_first(raw, "crmId", "id")) or mint_key("client", nombre, email),
        nombre=nombre,
        rubro=clean_str(raw.get("rubro")),
        ciudad=clean_str(raw.get("ciudad")),
        email=email,
        monto_pago=parse_float(raw.get("montoPago")),
        fecha_pago=parse_int(raw.get("fechaPago")),
        pagado=coerce_bool(raw.get("pagado")),
        pago_unico=coerce_bool(raw.get("pagoUnico")),
        pago_mes_siguiente=coerce_bool(raw.get("pagoMesSiguiente")),
        servicios=services,
        etiquetas=clean_str_list(_first(raw, "etiquetas", "tags")),
        observaciones=clean_str(raw.get("observaciones")),
    )


def normalize_monthly_payment(mes: Any, client_key: Any, raw: Any, tz: tzinfo) -> MonthlyPaymentRecord:
    month = clean_str(mes)
    client = clean_str(client_key)
    if month is None or client is None:
        raise RecordRejected("monthly payment needs month and client key")
    raw = unwrap_field(raw)
    if not isinstance(raw, dict):
        raw = {"pagado": raw}

    paid_services: dict[str, bool] = {}
    raw_services = unwrap_field(raw.get("serviciosPagados"))
    if isinstance(raw_services, dict):
        paid_services = {str(key).strip(): coerce_bool(value) for key, value in raw_services.items() if str(key).strip()}

    return MonthlyPaymentRecord(
        mes=month,
        crm_client_id=client,
        pagado=coerce_bool(raw.get("pagado")),
        servicios_pagados=paid_services,
        fecha_actualizacion=parse_datetime(raw.get("fechaActualizacion"), tz),
    )


def normalize_ledger_entry(prefix: str, periodo: Any, raw: dict[str, Any], tz: tzinfo, now: datetime) -> LedgerEntryRecord:
    period = clean_str(periodo)
    descripcion = clean_str(raw.get("descripcion"))
    if period is None:
        raise RecordRejected(f"{prefix} has no period")
    if descripcion is None:
        raise RecordRejected(f"{prefix} has no description")
    monto = parse_amount(raw.get("monto"))
    return LedgerEntryRecord(
        periodo=period,
        crm_id=clean_str(_first(raw, "crmId", "id")) or mint_key(prefix, period, descripcion, monto),
        descripcion=descripcion,
        monto=monto,
        fecha=parse_datetime(raw.get("fecha"), tz),
        categoria=clean_str(raw.get("categoria")) or "",
        fecha_creacion=parse_datetime(raw.get("fechaCreacion"), tz) or now,
    )


def normalize_budget(raw: dict[str, Any], tz: tzinfo, now: datetime, next_number: Callable[[], int]) -> BudgetRecord:
    cliente = unwrap_field(raw.get("cliente"))
    if isinstance(cliente, str):
        cliente = {"nombre": cliente}
    if not isinstance(cliente, dict):
        cliente = {"nombre": raw.get("clienteNombre")}
    client_name = clean_str(cliente.get("nombre"))
    if client_name is None:
        raise RecordRejected("budget has no client name")

    items: list[BudgetItem] = []
    raw_items = unwrap_field(raw.get("items"))
    for item in raw_items if isinstance(raw_items, list) else []:
        if not isinstance(item, dict) or clean_str(item.get("descripcion")) is None:
            continue
        quantity = parse_float(item.get("cantidad"))
        quantity = 1.0 if quantity is None else quantity
        unit_price = parse_amount(item.get("precioUnitario"))
        line_total = parse_float(item.get("subtotal"))
        items.append(
            BudgetItem(
                descripcion=clean_str(item.get("descripcion")) or "",
                cantidad=quantity,
                precio_unitario=unit_price,
                subtotal=line_total if line_total is not None else round(quantity * unit_price, 2),
            )
        )

    subtotal = parse_float(raw.get("subtotal"))
    if subtotal is None:
        subtotal = round(sum(item.subtotal for item in items), 2)
    discount = parse_amount(raw.get("descuento"))
    total = parse_float(raw.get("total"))
    numero = parse_int(raw.get("numero"))
    if numero is None or numero < 1:
        numero = next_number()

    return BudgetRecord(
        presupuesto_id=clean_str(_first(raw, "presupuestoId", "id")) or mint_key("budget", client_name, numero),
        numero=numero,
        cliente=BudgetClient(
            nombre=client_name,
            rubro=clean_str(cliente.get("rubro")),
            ciudad=clean_str(cliente.get("ciudad")),
            email=clean_str(cliente.get("email")),
            telefono=clean_str(cliente.get("telefono")),
        ),
        fecha=parse_datetime(raw.get("fecha"), tz) or now,
        validez=parse_int(raw.get("validez")) or 30,
        items=items,
        subtotal=subtotal,
        descuento=discount,
        porcentaje_descuento=parse_amount(raw.get("porcentajeDescuento")),
        total=total if total is not None else round(subtotal - discount, 2),
        estado=_enum(raw.get("estado"), get_args(BudgetStatus), "borrador"),
        observaciones=clean_str(raw.get("observaciones")),
        notas_internas=clean_str(raw.get("notasInternas")),
    )


def _client_ref(value: Any) -> ClientRef | None:
    value = unwrap_field(value)
    if isinstance(value, str):
        name = clean_str(value)
        return ClientRef(nombre=name) if name else None
    if isinstance(value, dict):
        ref = ClientRef(nombre=clean_str(value.get("nombre")), crm_id=clean_str(_first(value, "crmId", "id")))
        if ref.nombre is None and ref.crm_id is None:
            return None
        return ref
    return None


def _normalize_hour(value: Any) -> str | None:
    text = clean_str(value)
    if text is None:
        return None
    match = _HOUR_RE.match(text)
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return f"{hours:02d}:{minutes:02d}"


def normalize_meeting(raw: dict[str, Any], tz: tzinfo) -> MeetingRecord:
    titulo = clean_str(raw.get("titulo"))
    if titulo is None:
        raise RecordRejected("meeting has no title")
    fecha = parse_datetime(raw.get("fecha"), tz)
    if fecha is None:
        raise RecordRejected("meeting has no valid date")
    hora = _normalize_hour(raw.get("hora"))
    if hora is None:
        raise RecordRejected("meeting has no valid HH:MM time")
    link = clean_str(raw.get("linkMeet"))
    return MeetingRecord(
        reunion_id=clean_str(_first(raw, "reunionId", "id")) or mint_key("meeting", titulo, fecha.isoformat(), hora),
        titulo=titulo,
        fecha=fecha,
        hora=hora,
        tipo=_enum(raw.get("tipo"), get_args(MeetingType), "meet" if link else "oficina"),
        cliente=_client_ref(raw.get("cliente")),
        link_meet=link,
        observaciones=clean_str(raw.get("observaciones")),
        asignados=clean_str_list(raw.get("asignados")),
        completada=coerce_bool(raw.get("completada")),
    )


def normalize_task(raw: dict[str, Any], tz: tzinfo) -> TaskRecord:
    titulo = clean_str(raw.get("titulo"))
    if titulo is None:
        raise RecordRejected("task has no title")
    estado = _enum(raw.get("estado"), get_args(TaskStatus), "pendiente")
    return TaskRecord(
        tarea_id=clean_str(_first(raw, "tareaId", "id")) or mint_key("task", titulo),
        titulo=titulo,
        descripcion=clean_str(raw.get("descripcion")),
        fecha_vencimiento=parse_datetime(raw.get("fechaVencimiento"), tz),
        prioridad=_enum(raw.get("prioridad"), get_args(TaskPriority), "media"),
        estado=estado,
        cliente=_client_ref(raw.get("cliente")),
        etiquetas=clean_str_list(raw.get("etiquetas")),
        asignados=clean_str_list(raw.get("asignados")),
        completada=coerce_bool(raw.get("completada")) or estado == "completada",
        fecha_completada=parse_datetime(raw.get("fechaCompletada"), tz),
    )


def normalize_team_member(raw: dict[str, Any], tz: tzinfo, now: datetime) -> TeamMemberRecord:
    nombre = clean_str(raw.get("nombre"))
    if nombre is None:
        raise RecordRejected("team member has no name")
    email = clean_str(raw.get("email"))

    comments: list[TeamComment] = []
    raw_comments = unwrap_field(raw.get("comentarios"))
    for comment in raw_comments if isinstance(raw_comments, list) else []:
        if not isinstance(comment, dict):
            continue
        texto = clean_str(comment.get("texto"))
        autor = clean_str(comment.get("autor"))
        if texto is None or autor is None:
            continue
        rating = parse_float(comment.get("calificacion"))
        comments.append(
            TeamComment(
                texto=texto,
                autor=autor,
                fecha=parse_datetime(comment.get("fecha"), tz) or now,
                calificacion=None if rating is None else clamp(rating, 0, 10),
            )
        )

    return TeamMemberRecord(
        crm_id=clean_str(_first(raw, "crmId", "id")) or mint_key("member", nombre, email),
        nombre=nombre,
        cargo=clean_str(raw.get("cargo")),
        email=email.lower() if email else None,
        telefono=clean_str(raw.get("telefono")),
        calificacion=clamp(parse_amount(raw.get("calificacion")), 0, 10),
        comentarios=comments,
        activo=True if raw.get("activo") is None else coerce_bool(raw.get("activo")),
        habilidades=clean_str_list(raw.get("habilidades"), lower=True),
    )


def normalize_user(raw: dict[str, Any], tz: tzinfo, now: datetime) -> UserRecord:
    email = clean_str(raw.get("email"))
    if email is None or "@" not in email:
        raise RecordRejected("user has no usable e-mail")
    email = email.lower()
    password = raw.get("password")
    if not isinstance(password, str) or not password:
        raise RecordRejected("user has no password")
    return UserRecord(
        crm_id=clean_str(_first(raw, "crmId", "id")) or mint_key("user", email),
        nombre=clean_str(raw.get("nombre")) or email.split("@", 1)[0],
        email=email,
        password=password,
        rol=clean_str(raw.get("rol")) or "usuario",
        fecha_creacion=parse_datetime(raw.get("fechaCreacion"), tz) or now,
        source_id=clean_str(raw.get("_id")),
    )


def normalize_activity_list(raw: dict[str, Any], users: ReferenceIndex) -> ActivityListRecord:
    name = clean_str(raw.get("name"))
    if name is None:
        raise RecordRejected("activity list has no name")
    owner = users.resolve(classify_reference(unwrap_field(raw.get("owner"))))
    if owner is None:
        raise RecordRejected("activity list owner cannot be resolved")
    members: list[str] = []
    raw_members = unwrap_field(raw.get("members"))
    for member in raw_members if isinstance(raw_members, list) else []:
        resolved = users.resolve(classify_reference(member))
        if resolved is not None and resolved not in members:
            members.append(resolved)
    return ActivityListRecord(
        list_id=clean_str(_first(raw, "id", "_id")) or mint_key("list", name, owner),
        name=name,
        description=clean_str(raw.get("description")),
        color=clean_str(raw.get("color")) or "#22c55e",
        owner=owner,
        members=members,
        is_archived=coerce_bool(raw.get("isArchived")),
    )


def normalize_activity(
    raw: dict[str, Any],
    tz: tzinfo,
    users: ReferenceIndex,
    lists: ReferenceIndex,
    fallback_list: Callable[[str, str], str],
) -> ActivityRecord:
    title = clean_str(raw.get("title"))
    if title is None:
        raise RecordRejected("activity has no title")
    creator = users.resolve(classify_reference(unwrap_field(raw.get("createdBy"))))
    if creator is None:
        raise RecordRejected("activity creator cannot be resolved")
    activity_id = clean_str(_first(raw, "id", "_id")) or mint_key("activity", title, creator)
    list_key = lists.resolve(classify_reference(unwrap_field(raw.get("list"))))
    if list_key is None:
        list_key = fallback_list(activity_id, creator)

    return ActivityRecord(
        activity_id=activity_id,
        list_key=list_key,
        title=title,
        description=clean_str(raw.get("description")),
        status=_enum(raw.get("status"), get_args(ActivityStatus), "pendiente"),
        priority=_enum(raw.get("priority"), get_args(ActivityPriority), "media"),
        assignee=users.resolve(classify_reference(unwrap_field(raw.get("assignee")))),
        labels=clean_str_list(raw.get("labels")),
        due_date=parse_datetime(raw.get("dueDate"), tz),
        order=parse_int(raw.get("order")) or 0,
        created_by=creator,
        is_deleted=coerce_bool(raw.get("isDeleted")),
        deleted_at=parse_datetime(raw.get("deletedAt"), tz),
    )


def _report_sections(raw_sections: Any) -> list[ReportSection]:
    sections: list[ReportSection] = []
    raw_sections = unwrap_field(raw_sections)
    for section in raw_sections if isinstance(raw_sections, list) else []:
        if not isinstance(section, dict):
            continue
        items: list[ReportItem] = []
        raw_items = unwrap_field(section.get("items"))
        for item in raw_items if isinstance(raw_items, list) else []:
            if not isinstance(item, dict) or clean_str(item.get("campaignName")) is None:
                continue
            raw_metrics = unwrap_field(item.get("metrics"))
            metrics = {}
            if isinstance(raw_metrics, dict):
                for key, value in raw_metrics.items():
                    number = parse_float(value)
                    if number is not None:
                        metrics[str(key)] = number
            items.append(
                ReportItem(
                    campaign_name=clean_str(item.get("campaignName")) or "",
                    objective=clean_str(item.get("objective")),
                    template=_enum(item.get("template"), get_args(ReportTemplate), "custom"),
                    metrics=metrics,
                    notes=clean_str(item.get("notes")),
                )
            )
        sections.append(
            ReportSection(
                platform=_enum(section.get("platform"), get_args(ReportPlatform), "otro"),
                name=clean_str(section.get("name")) or "",
                items=items,
            )
        )
    return sections


def normalize_report(raw: dict[str, Any], tz: tzinfo) -> ReportRecord:
    titulo = clean_str(raw.get("titulo"))
    cliente_nombre = clean_str(raw.get("clienteNombre"))
    if titulo is None:
        raise RecordRejected("report has no title")
    if cliente_nombre is None:
        raise RecordRejected("report has no client name")
    periodo = unwrap_field(raw.get("periodo"))
    period_from = parse_datetime(periodo.get("from"), tz) if isinstance(periodo, dict) else None
    period_to = parse_datetime(periodo.get("to"), tz) if isinstance(periodo, dict) else None
    if period_from is None or period_to is None:
        raise RecordRejected("report has no valid period")

    notes = unwrap_field(raw.get("reportNotes"))
    notes = notes if isinstance(notes, dict) else {}
    share = unwrap_field(raw.get("share"))
    share = share if isinstance(share, dict) else {}
    currency = clean_str(raw.get("moneda"))
    taxes = parse_amount(raw.get("porcentajeImpuestos"))

    return ReportRecord(
        report_id=clean_str(_first(raw, "reportId", "id")) or mint_key("report", titulo, cliente_nombre),
        cliente_nombre=cliente_nombre,
        cliente_email=clean_str(raw.get("clienteEmail")),
        titulo=titulo,
        periodo=ReportPeriod(from_=period_from, to=period_to),
        moneda=currency.upper() if currency and currency.upper() in get_args(ReportCurrency) else "ARS",
        porcentaje_impuestos=clamp(taxes, 0, 100),
        estado=_enum(raw.get("estado"), get_args(ReportStatus), "borrador"),
        created_by=clean_str(raw.get("createdBy")) or "backup-import",
        sections=_report_sections(raw.get("sections")),
        report_notes=ReportNotes(
            observaciones=clean_str(notes.get("observaciones")),
            recomendaciones=clean_str(notes.get("recomendaciones")),
        ),
        share=ReportShare(
            enabled=coerce_bool(share.get("enabled")),
            token=clean_str(share.get("token")),
            expires_at=parse_datetime(share.get("expiresAt"), tz),
        ),
    )
