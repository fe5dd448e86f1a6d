"""Versioned email template model."""
from sqlalchemy import Column, Integer, String, Text, Boolean, JSON, Index, UniqueConstraint, text
from mailflow.db.base import Base, new_id


class EmailTemplate(Base):
    """One immutable version of a named template. Edits create version N+1."""

    __tablename__ = "email_templates"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    subject = Column(String(500), nullable=False)
    html_content = Column(Text, nullable=False)
    text_content = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)
    # email_type, component_path, unsubscribe_url_placeholder
    meta = Column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("name", "version", name="uq_email_templates_name_version"),
        # At most one active version per name, enforced by the database as well
        Index(
            "uq_email_templates_active_name",
            "name",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    @property
    def email_type(self) -> str:
        return (self.meta or {}).get("email_type", "marketing")

    def __repr__(self) -> str:
        return f"<EmailTemplate(name='{self.name}', version={self.version}, active={self.is_active})>"
