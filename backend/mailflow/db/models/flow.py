"""Flow definition models."""
from sqlalchemy import Column, Integer, String, Text, Boolean, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from mailflow.db.base import Base, new_id


class EmailFlow(Base):
    """A drip campaign: ordered steps started by one trigger event."""

    __tablename__ = "email_flows"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    trigger_event = Column(String(255), nullable=False, index=True)
    cancel_events = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)

    steps = relationship(
        "EmailFlowStep",
        back_populates="flow",
        order_by="EmailFlowStep.step_order",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<EmailFlow(id={self.id}, name='{self.name}', trigger='{self.trigger_event}')>"


class EmailFlowStep(Base):
    """One email of a flow, sent time_offset_minutes after the trigger."""

    __tablename__ = "email_flow_steps"

    id = Column(String(36), primary_key=True, default=new_id)
    flow_id = Column(String(36), ForeignKey("email_flows.id"), nullable=False, index=True)
    step_order = Column(Integer, nullable=False)
    time_offset_minutes = Column(Integer, nullable=False, default=0)
    template_id = Column(String(36), ForeignKey("email_templates.id"), nullable=False)
    template_version = Column(Integer, nullable=False)
    subject_override = Column(String(500), nullable=True)
    email_type = Column(String(20), nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)

    flow = relationship("EmailFlow", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("flow_id", "step_order", name="uq_email_flow_steps_order"),
    )

    def __repr__(self) -> str:
        return f"<EmailFlowStep(flow_id={self.flow_id}, step_order={self.step_order})>"
