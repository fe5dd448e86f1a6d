"""
Versioned template store and Jinja2 rendering.

Template versions are immutable. ``activate`` flips the active flag for a
name inside one transaction so readers never see two active versions.
"""

from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Union

from jinja2 import Environment, BaseLoader, TemplateError, select_autoescape
from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.orm import Session

from ..core.logging import get_logger
from ..core.exceptions import TemplateNotFoundError, EmailTemplateError, ValidationError, ConflictError
from ..db.models import EmailTemplate, EmailType

logger = get_logger(__name__)

DEFAULT_UNSUBSCRIBE_PLACEHOLDER = "{{unsubscribe_url}}"

_html_env = Environment(loader=BaseLoader(), autoescape=select_autoescape(default=True, default_for_string=True))
_text_env = Environment(loader=BaseLoader(), autoescape=False)


@dataclass
class RenderedEmail:
    subject: str
    html: str
    text: Optional[str] = None


def snapshot_template(template: EmailTemplate, subject_override: Optional[str] = None) -> Dict[str, Any]:
    """Freeze the parts of a template version a ledger row needs to render later."""
    return {
        "id": template.id,
        "name": template.name,
        "version": template.version,
        "subject": subject_override or template.subject,
        "html_content": template.html_content,
        "text_content": template.text_content,
        "metadata": dict(template.meta or {}),
    }


def _source(template: Union[EmailTemplate, Dict[str, Any]], field: str) -> Optional[str]:
    if isinstance(template, dict):
        return template.get(field)
    return getattr(template, field)


def _metadata(template: Union[EmailTemplate, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(template, dict):
        return template.get("metadata") or {}
    return template.meta or {}


def render_template(
    template: Union[EmailTemplate, Dict[str, Any]],
    variables: Optional[Dict[str, Any]] = None,
    unsubscribe_url: Optional[str] = None,
) -> RenderedEmail:
    """
    Render subject, HTML and text bodies from a template row or a frozen snapshot.

    The HTML body is autoescaped. A custom unsubscribe placeholder declared in
    the template metadata is rewritten to the ``unsubscribe_url`` variable.
    """
    context = dict(variables or {})
    if unsubscribe_url:
        context.setdefault("unsubscribe_url", unsubscribe_url)
        context.setdefault("unsubscribeUrl", unsubscribe_url)
    context.setdefault("unsubscribe_url", "")

    placeholder = _metadata(template).get("unsubscribe_url_placeholder") or DEFAULT_UNSUBSCRIBE_PLACEHOLDER

    def _prepare(text: Optional[str]) -> Optional[str]:
        if text is None:
            return None
        if placeholder != DEFAULT_UNSUBSCRIBE_PLACEHOLDER:
            text = text.replace(placeholder, "{{ unsubscribe_url }}")
        return text

    try:
        subject = _text_env.from_string(_prepare(_source(template, "subject")) or "").render(**context)
        html = _html_env.from_string(_prepare(_source(template, "html_content")) or "").render(**context)
        text_source = _prepare(_source(template, "text_content"))
        text = _text_env.from_string(text_source).render(**context) if text_source else None
    except TemplateError as e:
        logger.error(f"Template rendering failed: {e}", extra={"template": _source(template, "name")})
        raise EmailTemplateError(
            f"Template rendering failed: {e}",
            context={"template": _source(template, "name"), "version": _source(template, "version")},
            cause=e,
        )

    return RenderedEmail(subject=subject.strip(), html=html, text=text)


class TemplateStore:
    """Read and write access to versioned templates."""

    def __init__(self, db: Session):
        self.db = db

    def list_templates(self) -> List[EmailTemplate]:
        stmt = select(EmailTemplate).order_by(EmailTemplate.name, EmailTemplate.version)
        return list(self.db.execute(stmt).scalars())

    def get(self, template_id: str) -> EmailTemplate:
        template = self.db.get(EmailTemplate, template_id)
        if template is None:
            raise TemplateNotFoundError(
                f"Template {template_id} not found", context={"template_id": template_id}
            )
        return template

    def get_version(self, name: str, version: int) -> EmailTemplate:
        stmt = select(EmailTemplate).where(EmailTemplate.name == name, EmailTemplate.version == version)
        template = self.db.execute(stmt).scalar_one_or_none()
        if template is None:
            raise TemplateNotFoundError(
                f"Template {name} v{version} not found", context={"name": name, "version": version}
            )
        return template

    def get_active(self, name: str) -> EmailTemplate:
        stmt = select(EmailTemplate).where(EmailTemplate.name == name, EmailTemplate.is_active.is_(True))
        template = self.db.execute(stmt).scalar_one_or_none()
        if template is None:
            raise TemplateNotFoundError(f"No active version of template {name}", context={"name": name})
        return template

    def resolve(
        self,
        template_id: Optional[str] = None,
        version: Optional[int] = None,
        name: Optional[str] = None,
    ) -> EmailTemplate:
        """
        Resolve the version a send or step should bind to.

        A template id pins its own version unless ``version`` names a sibling.
        A bare name resolves to the active version.
        """
        if template_id:
            template = self.get(template_id)
            if version is not None and version != template.version:
                return self.get_version(template.name, version)
            return template
        if name:
            if version is not None:
                return self.get_version(name, version)
            return self.get_active(name)
        raise ValidationError("A template id or name is required")

    def create_version(
        self,
        name: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        activate: bool = False,
    ) -> EmailTemplate:
        """Insert version N+1 of ``name``."""
        metadata = dict(metadata or {})
        email_type = metadata.setdefault("email_type", EmailType.MARKETING.value)
        if email_type not in {t.value for t in EmailType}:
            raise ValidationError(
                f"Unknown email_type '{email_type}'", context={"email_type": email_type}
            )

        current = self.db.execute(
            select(func.max(EmailTemplate.version)).where(EmailTemplate.name == name)
        ).scalar()
        template = EmailTemplate(
            name=name,
            version=(current or 0) + 1,
            subject=subject,
            html_content=html_content,
            text_content=text_content,
            is_active=False,
            meta=metadata,
        )
        self.db.add(template)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(
                f"Template {name} version {template.version} was created concurrently",
                context={"name": name},
                cause=e,
            )
        self.db.refresh(template)
        logger.info(f"Created template {name} v{template.version}")

        if activate:
            return self.activate(name, template.version)
        return template

    def activate(self, name: str, version: int) -> EmailTemplate:
        """Make ``version`` the only active version of ``name``."""
        target = self.get_version(name, version)
        try:
            # Clear siblings first so the partial unique index is never violated
            self.db.execute(
                update(EmailTemplate)
                .where(EmailTemplate.name == name, EmailTemplate.id != target.id)
                .values(is_active=False)
            )
            self.db.execute(
                update(EmailTemplate).where(EmailTemplate.id == target.id).values(is_active=True)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Activation of template {name} v{version} rolled back")
            raise
        self.db.refresh(target)
        logger.info(f"Activated template {name} v{version}")
        return target

    def preview(self, template_id: str, variables: Optional[Dict[str, Any]] = None) -> RenderedEmail:
        template = self.get(template_id)
        return render_template(template, variables, unsubscribe_url="#unsubscribe-preview")
