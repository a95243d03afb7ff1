"""
Modelos de base de datos del motor de seguimiento de casos.

Un caso (TaxCase) por cliente y año fiscal, con tres dimensiones de estado:
- case_status: flujo interno de trabajo
- federal_status_new / state_status_new: estado del reembolso por rama

StatusHistory es un registro inmutable (solo inserción) de cada cambio.
ExternalCheck guarda cada consulta al portal estatal de reembolsos.
"""
from decimal import Decimal
import enum

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Numeric,
    ForeignKey, Text, Enum, JSON, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..db.database import Base


class UserRole(str, enum.Enum):
    CLIENT = "client"
    ADMIN = "admin"


class CaseStatus(str, enum.Enum):
    """Estado interno del caso (flujo de trabajo)."""
    awaiting_form = "awaiting_form"
    awaiting_docs = "awaiting_docs"
    documentos_enviados = "documentos_enviados"
    preparing = "preparing"
    taxes_filed = "taxes_filed"
    case_issues = "case_issues"


class RefundStatus(str, enum.Enum):
    """Estado del reembolso. Vocabulario compartido por la rama federal y la estatal."""
    taxes_en_proceso = "taxes_en_proceso"
    en_verificacion = "en_verificacion"
    verificacion_en_progreso = "verificacion_en_progreso"
    verificacion_rechazada = "verificacion_rechazada"
    problemas = "problemas"
    deposito_directo = "deposito_directo"
    cheque_en_camino = "cheque_en_camino"
    comision_pendiente = "comision_pendiente"
    taxes_completados = "taxes_completados"


class RefundBranch(str, enum.Enum):
    FEDERAL = "federal"
    STATE = "state"


class PaymentMethod(str, enum.Enum):
    BANK_DEPOSIT = "bank_deposit"
    CHECK = "check"


class DocumentType(str, enum.Enum):
    W2 = "w2"
    PAYMENT_PROOF = "payment_proof"
    OTHER = "other"


class NotificationType(str, enum.Enum):
    STATUS_CHANGE = "status_change"
    DOCS_MISSING = "docs_missing"
    SYSTEM = "system"
    PROBLEM_ALERT = "problem_alert"


class AuditAction(str, enum.Enum):
    REFUND_UPDATE = "refund_update"
    SSN_CHANGE = "ssn_change"
    BANK_INFO_CHANGE = "bank_info_change"
    DISCOUNT_APPLIED = "discount_applied"
    COMMISSION_PAID = "commission_paid"


class CheckResult(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


class CheckTrigger(str, enum.Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"


class ReferralStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESSFUL = "successful"


# Estados de avance positivo: resuelven problemas abiertos automáticamente
POSITIVE_PROGRESS_STATUSES = frozenset({
    RefundStatus.deposito_directo,
    RefundStatus.cheque_en_camino,
    RefundStatus.comision_pendiente,
    RefundStatus.taxes_completados,
})

# Etapas tempranas del caso (antes de tener la documentación completa)
EARLY_CASE_STATUSES = frozenset({CaseStatus.awaiting_form, CaseStatus.awaiting_docs})


def branch_field(branch, name: str) -> str:
    """Nombre de columna por rama: branch_field('federal', 'actual_refund') -> 'federal_actual_refund'."""
    return f"{RefundBranch(branch).value}_{name}"


# ===================== USUARIOS =====================

class User(Base):
    """Usuario de la plataforma (cliente o administrador)."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(100))
    last_name = Column(String(100))
    role = Column(Enum(UserRole), default=UserRole.CLIENT, nullable=False)
    is_active = Column(Boolean, default=True)

    # Código propio para referir a otros clientes (se genera al presentar taxes)
    referral_code = Column(String(20), unique=True)
    referred_by_code = Column(String(20))

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    client_profile = relationship("ClientProfile", back_populates="user", uselist=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class ClientProfile(Base):
    """Perfil del cliente. El SSN se guarda cifrado (Fernet)."""
    __tablename__ = "client_profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)

    ssn = Column(Text)
    profile_complete = Column(Boolean, default=False, nullable=False)
    is_draft = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="client_profile")
    tax_cases = relationship(
        "TaxCase", back_populates="client_profile", order_by="TaxCase.tax_year.desc()"
    )


# ===================== CASO =====================

class TaxCase(Base):
    """
    Caso de un cliente para un año fiscal.
    El caso activo es el de mayor tax_year.
    """
    __tablename__ = "tax_cases"
    __table_args__ = (
        UniqueConstraint("client_profile_id", "tax_year", name="uq_tax_case_profile_year"),
        Index("ix_tax_cases_case_status", "case_status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    client_profile_id = Column(Integer, ForeignKey("client_profiles.id"), nullable=False)
    tax_year = Column(Integer, nullable=False)

    # Dimensiones de estado
    case_status = Column(Enum(CaseStatus), default=CaseStatus.awaiting_form, nullable=False)
    case_status_changed_at = Column(DateTime(timezone=True))
    federal_status_new = Column(Enum(RefundStatus), default=RefundStatus.taxes_en_proceso)
    federal_status_new_changed_at = Column(DateTime(timezone=True))
    state_status_new = Column(Enum(RefundStatus), default=RefundStatus.taxes_en_proceso)
    state_status_new_changed_at = Column(DateTime(timezone=True))
    status_updated_at = Column(DateTime(timezone=True))

    taxes_filed = Column(Boolean, default=False, nullable=False)
    taxes_filed_at = Column(DateTime(timezone=True))

    payment_received = Column(Boolean, default=False, nullable=False)
    payment_method = Column(Enum(PaymentMethod), default=PaymentMethod.BANK_DEPOSIT)
    work_state = Column(String(50))

    # Rama federal
    federal_actual_refund = Column(Numeric(12, 2))
    federal_commission_rate = Column(Numeric(5, 4), default=Decimal("0.11"))
    federal_refund_received = Column(Boolean, default=False, nullable=False)
    federal_refund_received_at = Column(DateTime(timezone=True))
    federal_commission_paid = Column(Boolean, default=False, nullable=False)
    federal_commission_paid_at = Column(DateTime(timezone=True))
    federal_estimated_date = Column(DateTime(timezone=True))
    federal_deposit_date = Column(DateTime(timezone=True))
    federal_last_comment = Column(Text)
    federal_internal_comment = Column(Text)
    federal_last_reviewed_at = Column(DateTime(timezone=True))

    # Rama estatal
    state_actual_refund = Column(Numeric(12, 2))
    state_commission_rate = Column(Numeric(5, 4), default=Decimal("0.11"))
    state_refund_received = Column(Boolean, default=False, nullable=False)
    state_refund_received_at = Column(DateTime(timezone=True))
    state_commission_paid = Column(Boolean, default=False, nullable=False)
    state_commission_paid_at = Column(DateTime(timezone=True))
    state_estimated_date = Column(DateTime(timezone=True))
    state_deposit_date = Column(DateTime(timezone=True))
    state_last_comment = Column(Text)
    state_internal_comment = Column(Text)
    state_last_reviewed_at = Column(DateTime(timezone=True))

    # Problemas
    has_problem = Column(Boolean, default=False, nullable=False)
    problem_type = Column(String(50))
    problem_description = Column(Text)
    problem_step = Column(Integer)
    problem_resolved_at = Column(DateTime(timezone=True))

    # Legacy: verdadero cuando ambas ramas aplicables pagaron comisión
    commission_paid = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    client_profile = relationship("ClientProfile", back_populates="tax_cases")
    documents = relationship("Document", back_populates="tax_case")
    status_history = relationship(
        "StatusHistory", back_populates="tax_case", order_by="StatusHistory.id"
    )
    external_checks = relationship(
        "ExternalCheck", back_populates="tax_case", order_by="ExternalCheck.id.desc()"
    )

    @property
    def user(self):
        return self.client_profile.user if self.client_profile else None

    def has_document(self, doc_type: DocumentType) -> bool:
        return any(d.type == doc_type for d in self.documents)


class Document(Base):
    """Documento subido por el cliente (solo metadatos; el archivo vive fuera)."""
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, index=True)
    tax_case_id = Column(Integer, ForeignKey("tax_cases.id"), nullable=False, index=True)
    type = Column(Enum(DocumentType), nullable=False)
    file_name = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    tax_case = relationship("TaxCase", back_populates="documents")


# ===================== HISTORIAL =====================

class StatusHistory(Base):
    """
    Historial inmutable de cambios de estado (retención legal).
    changed_by_id nulo = cambio automático del sistema.
    """
    __tablename__ = "status_history"

    id = Column(Integer, primary_key=True, index=True)
    tax_case_id = Column(Integer, ForeignKey("tax_cases.id"), nullable=False, index=True)
    previous_status = Column(Text)
    new_status = Column(Text, nullable=False)
    changed_by_id = Column(Integer, ForeignKey("users.id"))
    comment = Column(Text)
    internal_comment = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    tax_case = relationship("TaxCase", back_populates="status_history")


class ExternalCheck(Base):
    """
    Consulta al portal estatal de reembolsos.
    Un cambio detectado es solo una recomendación hasta que un admin lo aprueba.
    """
    __tablename__ = "state_refund_checks"
    __table_args__ = (
        Index("ix_state_refund_checks_case_created", "tax_case_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tax_case_id = Column(Integer, ForeignKey("tax_cases.id"), nullable=False)
    raw_status = Column(Text, nullable=False)
    details = Column(JSON)
    mapped_status = Column(Enum(RefundStatus))
    previous_status = Column(Enum(RefundStatus))
    status_changed = Column(Boolean, default=False, nullable=False)
    check_result = Column(Enum(CheckResult), nullable=False)
    triggered_by = Column(Enum(CheckTrigger), nullable=False)
    triggered_by_user_id = Column(Integer, ForeignKey("users.id"))
    error_message = Column(Text)
    screenshot_path = Column(String(500))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    tax_case = relationship("TaxCase", back_populates="external_checks")


# ===================== COLABORADORES =====================

class Notification(Base):
    """Notificación in-app para un usuario."""
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_type_created", "user_id", "type", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    type = Column(Enum(NotificationType), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AuditLog(Base):
    """
    Log de auditoría de acciones sensibles.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(Enum(AuditAction), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"))
    target_user_id = Column(Integer, ForeignKey("users.id"))
    details = Column(JSON)
    ip_address = Column(String(50))
    user_agent = Column(String(500))
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class SystemSetting(Base):
    """Banderas persistentes (p.ej. cron_missing_docs_enabled)."""
    __tablename__ = "system_settings"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), unique=True, nullable=False)
    value = Column(String(255), nullable=False)
    description = Column(String(500))
    updated_by = Column(Integer, ForeignKey("users.id"))
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Referral(Base):
    """Referido: se marca exitoso cuando el caso del referido recibe su reembolso."""
    __tablename__ = "referrals"

    id = Column(Integer, primary_key=True, index=True)
    referrer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    referred_user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    tax_case_id = Column(Integer, ForeignKey("tax_cases.id"))
    status = Column(Enum(ReferralStatus), default=ReferralStatus.PENDING, nullable=False)
    completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
