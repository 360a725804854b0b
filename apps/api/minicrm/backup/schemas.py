from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

BudgetStatus = Literal["borrador", "enviado", "aceptado", "rechazado", "vencido"]
MeetingType = Literal["meet", "oficina"]
TaskPriority = Literal["baja", "media", "alta", "urgente"]
TaskStatus = Literal["pendiente", "en_progreso", "completada", "cancelada"]
ActivityStatus = Literal["pendiente", "en_proceso", "completada"]
ActivityPriority = Literal["baja", "media", "alta"]
ReportCurrency = Literal["ARS", "USD", "EUR"]
ReportStatus = Literal["borrador", "publicado"]
ReportPlatform = Literal["meta", "google", "otro"]
ReportTemplate = Literal["meta_conversaciones", "google_search", "custom"]


class BackupRecord(BaseModel):
    """Prepared record: python field names, wire names as aliases."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def business_key(self) -> str:
        raise NotImplementedError

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class ServiceItem(BaseModel):
    nombre: str
    precio: float | None = None


class ClientRecord(BackupRecord):
    crm_id: str = Field(alias="crmId", min_length=1)
    nombre: str = Field(min_length=1)
    rubro: str | None = None
    ciudad: str | None = None
    email: str | None = None
    monto_pago: float | None = Field(default=None, alias="montoPago")
    fecha_pago: int | None = Field(default=None, alias="fechaPago")
    pagado: bool = False
    pago_unico: bool = Field(default=False, alias="pagoUnico")
    pago_mes_siguiente: bool = Field(default=False, alias="pagoMesSiguiente")
    servicios: list[ServiceItem] = Field(default_factory=list)
    etiquetas: list[str] = Field(default_factory=list)
    observaciones: str | None = None

    @property
    def business_key(self) -> str:
        return self.crm_id


class MonthlyPaymentRecord(BackupRecord):
    mes: str = Field(min_length=1)
    crm_client_id: str = Field(alias="crmClientId", min_length=1)
    pagado: bool = False
    servicios_pagados: dict[str, bool] = Field(default_factory=dict, alias="serviciosPagados")
    fecha_actualizacion: datetime | None = Field(default=None, alias="fechaActualizacion")

    @property
    def business_key(self) -> str:
        return f"{self.mes}:{self.crm_client_id}"


class LedgerEntryRecord(BackupRecord):
    """Expense or income line; both collections share the same shape."""

    periodo: str = Field(min_length=1)
    crm_id: str = Field(alias="crmId", min_length=1)
    descripcion: str = Field(min_length=1)
    monto: float = 0.0
    fecha: datetime | None = None
    categoria: str = ""
    fecha_creacion: datetime = Field(alias="fechaCreacion")

    @property
    def business_key(self) -> str:
        return self.crm_id


class BudgetClient(BaseModel):
    nombre: str = Field(min_length=1)
    rubro: str | None = None
    ciudad: str | None = None
    email: str | None = None
    telefono: str | None = None


class BudgetItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    descripcion: str = Field(min_length=1)
    cantidad: float = 1
    precio_unitario: float = Field(default=0.0, alias="precioUnitario")
    subtotal: float = 0.0


class BudgetRecord(BackupRecord):
    presupuesto_id: str = Field(alias="presupuestoId", min_length=1)
    numero: int = Field(ge=1)
    cliente: BudgetClient
    fecha: datetime
    validez: int = 30
    items: list[BudgetItem] = Field(default_factory=list)
    subtotal: float = 0.0
    descuento: float = 0.0
    porcentaje_descuento: float = Field(default=0.0, alias="porcentajeDescuento")
    total: float = 0.0
    estado: BudgetStatus = "borrador"
    observaciones: str | None = None
    notas_internas: str | None = Field(default=None, alias="notasInternas")

    @property
    def business_key(self) -> str:
        return self.presupuesto_id


class ClientRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    nombre: str | None = None
    crm_id: str | None = Field(default=None, alias="crmId")


class MeetingRecord(BackupRecord):
    reunion_id: str = Field(alias="reunionId", min_length=1)
    titulo: str = Field(min_length=1)
    fecha: datetime
    hora: str = Field(pattern=r"^([0-1][0-9]|2[0-3]):[0-5][0-9]$")
    tipo: MeetingType = "oficina"
    cliente: ClientRef | None = None
    link_meet: str | None = Field(default=None, alias="linkMeet")
    observaciones: str | None = None
    asignados: list[str] = Field(default_factory=list)
    completada: bool = False

    @property
    def business_key(self) -> str:
        return self.reunion_id


class TaskRecord(BackupRecord):
    tarea_id: str = Field(alias="tareaId", min_length=1)
    titulo: str = Field(min_length=1)
    descripcion: str | None = None
    fecha_vencimiento: datetime | None = Field(default=None, alias="fechaVencimiento")
    prioridad: TaskPriority = "media"
    estado: TaskStatus = "pendiente"
    cliente: ClientRef | None = None
    etiquetas: list[str] = Field(default_factory=list)
    asignados: list[str] = Field(default_factory=list)
    completada: bool = False
    fecha_completada: datetime | None = Field(default=None, alias="fechaCompletada")

    @property
    def business_key(self) -> str:
        return self.tarea_id


class TeamComment(BaseModel):
    texto: str = Field(min_length=1)
    autor: str = Field(min_length=1)
    fecha: datetime
    calificacion: float | None = Field(default=None, ge=0, le=10)


class TeamMemberRecord(BackupRecord):
    crm_id: str = Field(alias="crmId", min_length=1)
    nombre: str = Field(min_length=1)
    cargo: str | None = None
    email: str | None = None
    telefono: str | None = None
    calificacion: float = Field(default=0, ge=0, le=10)
    comentarios: list[TeamComment] = Field(default_factory=list)
    activo: bool = True
    habilidades: list[str] = Field(default_factory=list)

    @property
    def business_key(self) -> str:
        return self.crm_id


class ActivityListRecord(BackupRecord):
    """``owner`` and ``members`` hold user e-mails until the executor maps them to internal ids."""

    list_id: str = Field(alias="id", min_length=1)
    name: str = Field(min_length=1)
    description: str | None = None
    color: str = "#22c55e"
    owner: str = Field(min_length=1)
    members: list[str] = Field(default_factory=list)
    is_archived: bool = Field(default=False, alias="isArchived")
    synthesized: bool = Field(default=False, exclude=True)

    @property
    def business_key(self) -> str:
        return self.list_id


class ActivityRecord(BackupRecord):
    """``list`` holds the list business key, user fields hold e-mails."""

    activity_id: str = Field(alias="id", min_length=1)
    list_key: str = Field(alias="list", min_length=1)
    title: str = Field(min_length=1)
    description: str | None = None
    status: ActivityStatus = "pendiente"
    priority: ActivityPriority = "media"
    assignee: str | None = None
    labels: list[str] = Field(default_factory=list)
    due_date: datetime | None = Field(default=None, alias="dueDate")
    order: int = 0
    created_by: str = Field(alias="createdBy", min_length=1)
    is_deleted: bool = Field(default=False, alias="isDeleted")
    deleted_at: datetime | None = Field(default=None, alias="deletedAt")

    @property
    def business_key(self) -> str:
        return self.activity_id


class ReportPeriod(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: datetime = Field(alias="from")
    to: datetime


class ReportItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    campaign_name: str = Field(alias="campaignName", min_length=1)
    objective: str | None = None
    template: ReportTemplate = "custom"
    metrics: dict[str, float] = Field(default_factory=dict)
    notes: str | None = None


class ReportSection(BaseModel):
    platform: ReportPlatform = "otro"
    name: str = ""
    items: list[ReportItem] = Field(default_factory=list)


class ReportNotes(BaseModel):
    observaciones: str | None = None
    recomendaciones: str | None = None


class ReportShare(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = False
    token: str | None = None
    expires_at: datetime | None = Field(default=None, alias="expiresAt")


class ReportRecord(BackupRecord):
    report_id: str = Field(alias="reportId", min_length=1)
    cliente_nombre: str = Field(alias="clienteNombre", min_length=1)
    cliente_email: str | None = Field(default=None, alias="clienteEmail")
    titulo: str = Field(min_length=1)
    periodo: ReportPeriod
    moneda: ReportCurrency = "ARS"
    porcentaje_impuestos: float = Field(default=0, alias="porcentajeImpuestos", ge=0, le=100)
    estado: ReportStatus = "borrador"
    created_by: str = Field(alias="createdBy", min_length=1)
    sections: list[ReportSection] = Field(default_factory=list)
    report_notes: ReportNotes = Field(default_factory=ReportNotes, alias="reportNotes")
    share: ReportShare = Field(default_factory=ReportShare)

    @property
    def business_key(self) -> str:
        return self.report_id


class UserRecord(BackupRecord):
    crm_id: str = Field(alias="crmId", min_length=1)
    nombre: str = Field(min_length=1)
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)
    rol: str = "usuario"
    fecha_creacion: datetime = Field(alias="fechaCreacion")
    source_id: str | None = Field(default=None, exclude=True)

    @property
    def business_key(self) -> str:
        return self.crm_id


@dataclass
class PreparedBackup:
    version: str
    records: dict[str, list[BackupRecord]] = field(default_factory=dict)
    dropped: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def prepared_counts(self) -> dict[str, int]:
        return {collection: len(items) for collection, items in self.records.items()}

    def total_records(self) -> int:
        return sum(len(items) for items in self.records.values())

    def total_dropped(self) -> int:
        return sum(self.dropped.values())
