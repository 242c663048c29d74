from datetime import time, timedelta

from sqlmodel import Session, select

from app.core.security import get_password_hash
from app.core.time_window import now_local
from app.database import create_db_and_tables, engine
from app.models.closed_day import ProviderClosedDay
from app.models.service import Service
from app.models.sub_service import SubService
from app.models.user import User, UserRole


PROVIDER_EMAIL = "salao@exemplo.com"
CLIENT_EMAIL = "cliente@exemplo.com"


def _get_or_create_user(session: Session, email: str, **fields) -> User:
    user = session.exec(select(User).where(User.email == email)).first()
    if user:
        return user

    user = User(email=email, password_hash=get_password_hash("123456"), **fields)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def main():
    create_db_and_tables()

    with Session(engine) as session:
        # 1) prestador e cliente de teste
        provider = _get_or_create_user(
            session,
            PROVIDER_EMAIL,
            name="Salão Exemplo",
            role=UserRole.PROVIDER,
            business_name="Salão Exemplo",
            phone="+254700000001",
            opening_time=time(8, 0),
            closing_time=time(18, 0),
        )
        if provider.role != UserRole.PROVIDER:
            raise RuntimeError(f"Usuário {PROVIDER_EMAIL} existe mas role != 'provider'")

        _get_or_create_user(session, CLIENT_EMAIL, name="Cliente Teste", role=UserRole.CLIENT, phone="+254700000002")

        # 2) serviços (se não existir)
        existing_service = session.exec(
            select(Service).where(Service.provider_id == provider.id)
        ).first()

        if not existing_service:
            haircut = Service(name="Corte", category="Cabelo", duration_minutes=30, price=1500.0,
                              slot_interval=30, provider_id=provider.id)
            session.add_all(
                [
                    haircut,
                    Service(name="Manicure", category="Unhas", duration_minutes=45, price=1000.0,
                            capacity=2, slot_interval=45, provider_id=provider.id),
                    Service(name="Tratamento facial", category="Estética", duration_minutes=60, price=3000.0,
                            slot_interval=60, opening_time=time(10, 0), closing_time=time(16, 0),
                            provider_id=provider.id),
                ]
            )
            session.flush()
            session.add(SubService(service_id=haircut.id, name="Lavagem", price=200.0))

        # 3) dia fechado de exemplo: daqui a 7 dias
        closed_date = (now_local() + timedelta(days=7)).date()
        exists_closed = session.exec(
            select(ProviderClosedDay).where(
                ProviderClosedDay.provider_id == provider.id,
                ProviderClosedDay.closed_date == closed_date,
            )
        ).first()

        if not exists_closed:
            session.add(ProviderClosedDay(provider_id=provider.id, closed_date=closed_date, reason="Feriado"))

        session.commit()

        print("✅ Seed concluído!")
        print(f"Prestador: {provider.id} ({provider.email}) / senha 123456")
        print(f"Cliente: {CLIENT_EMAIL} / senha 123456")
        print("Horário: 08:00-18:00; Tratamento facial 10:00-16:00")
        print(f"Dia fechado: {closed_date.isoformat()}")


if __name__ == "__main__":
    main()
