import uuid
from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Text, Boolean, ForeignKey, JSON, DateTime, Index, UniqueConstraint


def _uuid() -> str: return str(uuid.uuid4())
def utcnow() -> datetime: return datetime.now(timezone.utc)

class Base(DeclarativeBase): pass

class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        Index("idx_questions_category", "category"),
        Index("idx_questions_topic", "topic"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    question_text: Mapped[str] = mapped_column(Text)
    options: Mapped[list] = mapped_column(JSON)
    correct_answer_letter: Mapped[str] = mapped_column(String(1))
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(64))
    topic: Mapped[str | None] = mapped_column(String(128), nullable=True)
    is_ai_generated: Mapped[bool] = mapped_column(Boolean, default=False)
    is_edited: Mapped[bool] = mapped_column(Boolean, default=False)
    edited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    # optimistic concurrency token, bumped on every update
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    def letters(self) -> list[str]:
        return [chr(65 + i) for i in range(len(self.options or []))]

class Profile(Base):
    __tablename__ = "profiles"
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

class UserSession(Base):
    __tablename__ = "user_sessions"
    __table_args__ = (Index("idx_us_user", "user_id"), Index("idx_us_started", "started_at"))
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(255), ForeignKey("profiles.id"))
    category_selection: Mapped[str] = mapped_column(String(64))
    topics: Mapped[list] = mapped_column(JSON, default=list)
    total_questions: Mapped[int] = mapped_column(Integer)
    time_limit_seconds: Mapped[int] = mapped_column(Integer)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    score_achieved: Mapped[int | None] = mapped_column(Integer, nullable=True)

    profile: Mapped["Profile"] = relationship()
    items: Mapped[list["SessionQuestion"]] = relationship(
        back_populates="session", order_by="SessionQuestion.order_in_session", cascade="all, delete-orphan"
    )

class SessionQuestion(Base):
    __tablename__ = "session_questions"
    __table_args__ = (
        UniqueConstraint("session_id", "order_in_session", name="uq_session_question_order"),
        Index("idx_sq_session", "session_id"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("user_sessions.id", ondelete="CASCADE"))
    question_id: Mapped[str] = mapped_column(String(36), ForeignKey("questions.id"))
    order_in_session: Mapped[int] = mapped_column(Integer)
    # correct letter as stored when the session was created; grading reads this
    expected_answer_letter: Mapped[str] = mapped_column(String(1))
    user_answer_letter: Mapped[str | None] = mapped_column(String(1), nullable=True)
    is_correct: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    session: Mapped["UserSession"] = relationship(back_populates="items")
    question: Mapped["Question"] = relationship(lazy="joined")

class CorrectionRun(Base):
    __tablename__ = "correction_runs"
    __table_args__ = (Index("idx_cr_session", "session_id"), Index("idx_cr_status", "status"))
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    status: Mapped[str] = mapped_column(String(20))
    total_processed: Mapped[int] = mapped_column(Integer, default=0)
    total_succeeded: Mapped[int] = mapped_column(Integer, default=0)
    total_failed: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
