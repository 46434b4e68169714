from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy import String, Text, DateTime, Boolean, UniqueConstraint
from datetime import datetime

Base = declarative_base()

class FormState(Base):
    __tablename__ = "form_state"
    id: Mapped[int] = mapped_column(primary_key=True)
    session_id: Mapped[str] = mapped_column(String(120), index=True)
    namespace: Mapped[str] = mapped_column(String(80))  # azb_cart | checkoutState | customerOrdersState
    payload: Mapped[str | None] = mapped_column(Text)
    submitted: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    __table_args__ = (UniqueConstraint("session_id", "namespace", name="uq_form_state_session_ns"),)
