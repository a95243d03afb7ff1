#!/usr/bin/env python3
"""
Script para crear datos de prueba: un admin, clientes con perfil y casos en
distintas etapas del flujo.
Ejecutar: python backend/scripts/seed_data.py
Requiere ENCRYPTION_KEY configurada (los SSN se guardan cifrados).
"""

import sys
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

# Agregar el directorio raíz al path de Python
root_dir = Path(__file__).parent.parent
sys.path.insert(0, str(root_dir))

from sqlalchemy.orm import Session
from app.core.config import utc_now
from app.core.security import create_access_token, encrypt_sensitive_data
from app.db.database import SessionLocal, init_db
from app.models.models import (
    User, UserRole, ClientProfile, TaxCase, CaseStatus, RefundStatus, PaymentMethod
)


TEST_CLIENTS = [
    # Recién registrado, sin formulario
    {
        "email": "cliente.nuevo@example.com",
        "first_name": "Laura",
        "last_name": "Gómez",
        "ssn": "111-22-3333",
        "profile_complete": False,
        "case": {"case_status": CaseStatus.awaiting_form},
    },
    # Esperando documentos
    {
        "email": "cliente.docs@example.com",
        "first_name": "Jorge",
        "last_name": "Ramírez",
        "ssn": "222-33-4444",
        "profile_complete": True,
        "case": {"case_status": CaseStatus.awaiting_docs},
    },
    # Presentado en Colorado, elegible para el monitor estatal
    {
        "email": "cliente.colorado@example.com",
        "first_name": "Sofía",
        "last_name": "Herrera",
        "ssn": "333-44-5555",
        "profile_complete": True,
        "case": {
            "case_status": CaseStatus.taxes_filed,
            "work_state": "Colorado",
            "state_actual_refund": Decimal("850.00"),
            "federal_actual_refund": Decimal("1420.00"),
            "taxes_filed": True,
            "taxes_filed_days_ago": 20,
        },
    },
    # Reembolso federal recibido, comisión pendiente de cobro
    {
        "email": "cliente.comision@example.com",
        "first_name": "Andrés",
        "last_name": "Torres",
        "ssn": "444-55-6666",
        "profile_complete": True,
        "case": {
            "case_status": CaseStatus.taxes_filed,
            "federal_status_new": RefundStatus.comision_pendiente,
            "federal_actual_refund": Decimal("2100.00"),
            "federal_refund_received": True,
            "payment_method": PaymentMethod.CHECK,
            "taxes_filed": True,
            "taxes_filed_days_ago": 60,
        },
    },
]


def get_or_create_admin(db: Session):
    """Crear el administrador de prueba si no existe."""
    admin = db.query(User).filter(User.email == "admin@example.com").first()
    if admin:
        print("⚠️  Admin ya existe: admin@example.com")
        return admin, False

    admin = User(
        email="admin@example.com",
        first_name="Admin",
        last_name="Principal",
        role=UserRole.ADMIN,
        is_active=True,
    )
    db.add(admin)
    db.flush()
    print("✅ Admin creado: admin@example.com")
    return admin, True


def seed_clients(db: Session):
    """Crear clientes con perfil y un caso del año fiscal en curso."""
    created_count = 0
    existing_count = 0
    tax_year = utc_now().year - 1

    for client_data in TEST_CLIENTS:
        existing_user = db.query(User).filter(User.email == client_data["email"]).first()
        if existing_user:
            existing_count += 1
            print(f"⚠️  Cliente ya existe: {client_data['email']}")
            continue

        user = User(
            email=client_data["email"],
            first_name=client_data["first_name"],
            last_name=client_data["last_name"],
            role=UserRole.CLIENT,
            is_active=True,
        )
        db.add(user)
        db.flush()

        profile = ClientProfile(
            user_id=user.id,
            ssn=encrypt_sensitive_data(client_data["ssn"]),
            profile_complete=client_data["profile_complete"],
            is_draft=not client_data["profile_complete"],
        )
        db.add(profile)
        db.flush()

        case_fields = dict(client_data["case"])
        days_ago = case_fields.pop("taxes_filed_days_ago", None)
        if days_ago is not None:
            filed_at = utc_now() - timedelta(days=days_ago)
            case_fields["taxes_filed_at"] = filed_at
            case_fields["federal_estimated_date"] = filed_at + timedelta(days=42)
            case_fields["state_estimated_date"] = filed_at + timedelta(days=63)

        db.add(TaxCase(client_profile_id=profile.id, tax_year=tax_year, **case_fields))
        created_count += 1
        print(f"✅ Cliente creado: {client_data['email']} ({client_data['case']['case_status'].value})")

    return created_count, existing_count


def main():
    """Función principal."""
    print("=" * 60)
    print("🌱 SEED DATA - Seguimiento de Casos")
    print("=" * 60)
    print("\nCreando datos de prueba...\n")

    # Crear tablas si no existen
    print("📋 Verificando tablas de base de datos...")
    init_db()
    print("✅ Tablas verificadas\n")

    db = SessionLocal()

    try:
        print("👥 Creando usuarios de prueba...")
        admin, _ = get_or_create_admin(db)
        created, existing = seed_clients(db)

        db.commit()

        print("\n" + "=" * 60)
        print("✅ PROCESO COMPLETADO")
        print("=" * 60)
        print(f"\n📊 Resumen:")
        print(f"   • Clientes creados: {created}")
        print(f"   • Clientes existentes: {existing}")

        print("\n🔑 Token de admin (válido por la duración configurada):")
        print(f"   {create_access_token({'sub': str(admin.id)})}")
        print("\n" + "=" * 60)

    except Exception as e:
        print(f"\n❌ Error al crear datos de prueba: {e}")
        import traceback
        traceback.print_exc()
        db.rollback()
        return 1
    finally:
        db.close()

    return 0


if __name__ == "__main__":
    exit_code = main()
    sys.exit(exit_code)
