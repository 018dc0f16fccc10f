"""
=============================================================================
FACEUP - Modelos de Base de Datos (SQLAlchemy)
=============================================================================
Esquema del flujo de apuestas: usuarios con saldo sellado por hash,
borradores de apuesta, ledger de mutaciones encadenadas y registro inmutable
de rondas all-in.

Principios de Diseño:
- Integridad Financiera: saldo nunca negativo (CHECK) y versión del saldo
  para control de concurrencia optimista.
- Inmutabilidad: cada mutación registra saldo antes/después y se encadena
  con la anterior mediante SHA-256.
- Auditoría: gameHash único por ronda, derivable del deckSeed revelado.
=============================================================================
"""

import hashlib
import secrets
from datetime import datetime
from enum import Enum as PyEnum
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB en PostgreSQL, JSON genérico en el resto (SQLite en pruebas)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# =============================================================================
# ENUMERACIONES DEL SISTEMA
# =============================================================================

class MembershipType(str, PyEnum):
    """Tipo de membresía del usuario."""
    NORMAL = "normal"
    PREMIUM = "premium"


class TransactionType(str, PyEnum):
    """Tipo de mutación en el ledger."""
    DEBIT = "DEBIT"          # Apuesta descontada
    CREDIT = "CREDIT"        # Pago o reembolso
    ROLLBACK = "ROLLBACK"    # Compensación por fallo del sistema


class RoundResultType(str, PyEnum):
    """Resultado de una ronda all-in."""
    WIN = "WIN"
    LOSE = "LOSE"
    PUSH = "PUSH"


# =============================================================================
# BASE DECLARATIVA
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Clase base para todos los modelos con soporte async."""
    pass


def _new_id() -> str:
    return str(uuid4())


# =============================================================================
# TABLA: USERS (Identidad y Saldo)
# =============================================================================

class User(Base):
    """
    Usuarios con balance_hash para detección de manipulación.

    SEGURIDAD: balance_hash = SHA-256(id:coins:salt). Si alguien modifica el
    saldo directamente en la BD sin actualizar el hash, la auditoría lo detecta.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)

    # ==========================================================================
    # SALDO Y BALANCE HASH
    # ==========================================================================
    coins: Mapped[int] = mapped_column(BigInteger, default=5000, nullable=False)
    balance_hash: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    balance_salt: Mapped[str] = mapped_column(String(32), nullable=False, default="")

    # Versión del saldo para compare-and-swap
    balance_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # ==========================================================================
    # BENEFICIOS
    # ==========================================================================
    membership_type: Mapped[MembershipType] = mapped_column(
        Enum(MembershipType, values_callable=lambda e: [m.value for m in e]),
        default=MembershipType.NORMAL,
        nullable=False
    )
    subscription_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    tickets: Mapped[int] = mapped_column(Integer, default=3, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    # Relaciones
    transactions: Mapped[List["LedgerTransaction"]] = relationship(back_populates="user")

    __table_args__ = (
        CheckConstraint("coins >= 0", name="check_positive_balance"),
        CheckConstraint("tickets >= 0", name="check_positive_tickets"),
    )

    def compute_balance_hash(self) -> str:
        """Debe recalcularse SIEMPRE que se modifique el saldo."""
        return compute_balance_hash(self.id, self.coins, self.balance_salt)

    def verify_balance_integrity(self) -> bool:
        return secrets.compare_digest(self.balance_hash, self.compute_balance_hash())

    @staticmethod
    def generate_balance_salt() -> str:
        return secrets.token_hex(16)


def compute_balance_hash(user_id: str, coins: int, salt: str) -> str:
    return hashlib.sha256(f"{user_id}:{coins}:{salt}".encode()).hexdigest()


# =============================================================================
# TABLA: LEDGER_TRANSACTIONS (Registro de Mutaciones)
# =============================================================================

class LedgerTransaction(Base):
    """
    Libro mayor de mutaciones de saldo.

    PRINCIPIO: el saldo de cada usuario es reconstruible a partir de la
    cadena de mutaciones; una ronda sin registro se concilia desde aquí.
    """
    __tablename__ = "ledger_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    transaction_type: Mapped[TransactionType] = mapped_column(Enum(TransactionType), nullable=False)

    # Montos (amount siempre positivo, delta con signo)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    delta: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Idempotencia y cadena de integridad
    idempotency_key: Mapped[str] = mapped_column(String(160), nullable=False, unique=True)
    reference: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    previous_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    user: Mapped["User"] = relationship(back_populates="transactions")

    __table_args__ = (
        Index("idx_ltx_user_version", "user_id", "balance_version", unique=True),
        Index("idx_ltx_reference", "reference"),
        CheckConstraint("amount > 0", name="check_ltx_positive_amount"),
        CheckConstraint("balance_after >= 0", name="check_ltx_non_negative"),
    )


# =============================================================================
# TABLA: BET_DRAFTS (Reservas de Apuesta)
# =============================================================================

class BetDraftRow(Base):
    """Borrador de apuesta con vencimiento. consumed_at es el punto de sincronización."""
    __tablename__ = "bet_drafts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    bet_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False, default="classic")

    # Seed secreto y su compromiso público
    deck_seed: Mapped[str] = mapped_column(String(64), nullable=False)
    deck_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    consumed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_drafts_user_live", "user_id", "consumed_at", "expires_at"),
        Index("idx_drafts_expires", "expires_at"),
        CheckConstraint("amount > 0", name="check_draft_amount_positive"),
        CheckConstraint("expires_at > created_at", name="check_draft_expiry"),
    )


# =============================================================================
# TABLA: ALL_IN_RUNS (Registro de Rondas)
# =============================================================================

class AllInRun(Base):
    """Ronda liquidada. Inmutable después de insertarse."""
    __tablename__ = "all_in_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    bet_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)

    pre_balance: Mapped[int] = mapped_column(BigInteger, nullable=False)
    bet_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    result: Mapped[RoundResultType] = mapped_column(Enum(RoundResultType), nullable=False)
    multiplier: Mapped[int] = mapped_column(Integer, nullable=False)
    payout: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rebate: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Provably Fair
    game_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    game_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    deck_seed: Mapped[str] = mapped_column(String(64), nullable=False)
    deck_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    player_hand: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    dealer_hand: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    is_blackjack: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    player_total: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    dealer_total: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    ticket_consumed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    client_ip: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_runs_user_created", "user_id", "created_at"),
        CheckConstraint("bet_amount > 0", name="check_run_bet_positive"),
        CheckConstraint("payout >= 0 AND rebate >= 0", name="check_run_payout_positive"),
    )


# =============================================================================
# EVENT LISTENERS PARA INTEGRIDAD AUTOMÁTICA
# =============================================================================

@event.listens_for(User, "before_insert")
def user_before_insert(mapper, connection, target: User):
    """Genera id, salt y hash inicial del saldo antes de insertar."""
    if not target.id:
        target.id = _new_id()
    if target.coins is None:
        target.coins = 5000
    if not target.balance_salt:
        target.balance_salt = User.generate_balance_salt()
    target.balance_hash = target.compute_balance_hash()
