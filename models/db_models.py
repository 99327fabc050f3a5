from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class UserRecord(Base):

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("length(username) > 0", name="ck_users_username_not_empty"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(Text, unique=True, nullable=False)
    password = Column(Text, nullable=False)
    photo_uri = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)


class NoteRecord(Base):

    __tablename__ = "notes"
    __table_args__ = (
        CheckConstraint("length(title) > 0", name="ck_notes_title_not_empty"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class QuizHistoryRecord(Base):

    __tablename__ = "quiz_history"
    __table_args__ = (
        CheckConstraint("total_questions > 0", name="ck_quiz_history_total_positive"),
        CheckConstraint("score >= 0 AND score <= total_questions", name="ck_quiz_history_score_range"),
        CheckConstraint("difficulty IN ('easy', 'medium', 'hard')", name="ck_quiz_history_difficulty"),
        CheckConstraint("quiz_type IN ('multiple-choice', 'true-false')", name="ck_quiz_history_quiz_type"),
        CheckConstraint("timer_duration >= 0", name="ck_quiz_history_timer_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    note_id = Column(Integer, ForeignKey("notes.id", ondelete="CASCADE"), nullable=False, index=True)
    score = Column(Integer, nullable=False)
    total_questions = Column(Integer, nullable=False)
    difficulty = Column(Text, nullable=False)
    quiz_type = Column(Text, nullable=False)
    quiz_data = Column(Text, nullable=False)
    user_answers = Column(Text, nullable=False)
    timer_duration = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False)


users_table = UserRecord.__table__
notes_table = NoteRecord.__table__
quiz_history_table = QuizHistoryRecord.__table__
