from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    quota = relationship("Quota", back_populates="user", uselist=False)
    files = relationship("UserFile", back_populates="owner")


class Quota(Base):
    """
    Per-user storage ledger.
    used_bytes is the sum of the logical sizes of the user's live uploads,
    deduplicated or not.
    """
    __tablename__ = "quotas"
    __table_args__ = (
        CheckConstraint("used_bytes >= 0", name="ck_quotas_used_non_negative"),
        CheckConstraint("used_bytes <= limit_bytes", name="ck_quotas_used_within_limit"),
    )

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    used_bytes = Column(BigInteger, nullable=False, default=0)
    limit_bytes = Column(BigInteger, nullable=False)

    user = relationship("User", back_populates="quota")


class FileBlob(Base):
    """
    Physical File Storage.
    Unique by content_hash (SHA-256). ref_count is the number of live
    UserFile rows pointing at it; the blob exists on disk iff ref_count > 0.
    """
    __tablename__ = "file_blobs"
    __table_args__ = (
        CheckConstraint("ref_count >= 0", name="ck_file_blobs_ref_count_non_negative"),
    )

    content_hash = Column(String(64), primary_key=True, index=True)
    file_path = Column(String, nullable=False)
    size_bytes = Column(BigInteger, nullable=False)
    ref_count = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class UserFile(Base):
    """
    Virtual File. One row per upload, even when the content is shared.
    """
    __tablename__ = "user_files"

    id = Column(Integer, primary_key=True, index=True)
    filename = Column(String, nullable=False)
    upload_date = Column(DateTime(timezone=True), default=utcnow)
    size_bytes = Column(BigInteger, nullable=False)
    download_count = Column(Integer, nullable=False, default=0)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    blob_hash = Column(String(64), ForeignKey("file_blobs.content_hash"), nullable=False, index=True)

    owner = relationship("User", back_populates="files")
    blob = relationship("FileBlob")
    shares = relationship("FileShare", back_populates="file", passive_deletes=True)


class FileShare(Base):
    """
    Read grant on one UserFile from its owner to another user.
    """
    __tablename__ = "file_shares"
    __table_args__ = (
        UniqueConstraint("file_id", "granted_to", name="uq_file_shares_file_target"),
    )

    id = Column(Integer, primary_key=True, index=True)
    file_id = Column(Integer, ForeignKey("user_files.id", ondelete="CASCADE"), nullable=False)
    granted_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    granted_to = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    mode = Column(String, nullable=False, default="read")
    granted_at = Column(DateTime(timezone=True), default=utcnow)

    file = relationship("UserFile", back_populates="shares")
