"""Unit tests for the versioned template store and rendering."""
import random

import pytest
from sqlalchemy import select, func

from mailflow.core.exceptions import TemplateNotFoundError, EmailTemplateError, ValidationError
from mailflow.db.models import EmailTemplate
from mailflow.email.templates import TemplateStore, render_template, snapshot_template


def _active_count(db, name):
    stmt = select(func.count()).select_from(EmailTemplate).where(
        EmailTemplate.name == name, EmailTemplate.is_active.is_(True)
    )
    return db.execute(stmt).scalar()


class TestTemplateVersions:
    """Tests for version creation and resolution."""

    def test_versions_increment_per_name(self, db_session):
        """Each new version of a name gets max + 1."""
        store = TemplateStore(db_session)
        v1 = store.create_version(name="welcome", subject="Hi", html_content="<p>1</p>")
        v2 = store.create_version(name="welcome", subject="Hi", html_content="<p>2</p>")
        other = store.create_version(name="receipt", subject="Receipt", html_content="<p>r</p>")
        assert (v1.version, v2.version, other.version) == (1, 2, 1)

    def test_new_versions_are_inactive_unless_requested(self, db_session):
        store = TemplateStore(db_session)
        store.create_version(name="welcome", subject="Hi", html_content="<p>1</p>")
        assert _active_count(db_session, "welcome") == 0
        store.create_version(name="welcome", subject="Hi", html_content="<p>2</p>", activate=True)
        assert store.get_active("welcome").version == 2

    def test_resolve_by_name_uses_active_version(self, db_session):
        store = TemplateStore(db_session)
        store.create_version(name="welcome", subject="Old", html_content="<p>1</p>", activate=True)
        store.create_version(name="welcome", subject="New", html_content="<p>2</p>")
        assert store.resolve(name="welcome").subject == "Old"
        assert store.resolve(name="welcome", version=2).subject == "New"

    def test_resolve_by_id_with_sibling_version(self, db_session):
        store = TemplateStore(db_session)
        v1 = store.create_version(name="welcome", subject="Old", html_content="<p>1</p>")
        store.create_version(name="welcome", subject="New", html_content="<p>2</p>")
        assert store.resolve(template_id=v1.id).version == 1
        assert store.resolve(template_id=v1.id, version=2).subject == "New"

    def test_resolve_unknown_raises(self, db_session):
        store = TemplateStore(db_session)
        with pytest.raises(TemplateNotFoundError):
            store.resolve(template_id="missing")
        with pytest.raises(TemplateNotFoundError):
            store.resolve(name="missing")
        with pytest.raises(ValidationError):
            store.resolve()

    def test_unknown_email_type_rejected(self, db_session):
        with pytest.raises(ValidationError):
            TemplateStore(db_session).create_version(
                name="welcome", subject="Hi", html_content="<p/>", metadata={"email_type": "newsletter"}
            )


class TestActivation:
    """At most one version of a name is ever active."""

    def test_activate_switches_active_version(self, db_session):
        store = TemplateStore(db_session)
        store.create_version(name="welcome", subject="Hi", html_content="<p>1</p>", activate=True)
        store.create_version(name="welcome", subject="Hi", html_content="<p>2</p>", activate=True)
        store.activate("welcome", 1)
        assert store.get_active("welcome").version == 1
        assert _active_count(db_session, "welcome") == 1

    def test_activate_unknown_version_raises(self, db_session):
        store = TemplateStore(db_session)
        store.create_version(name="welcome", subject="Hi", html_content="<p>1</p>", activate=True)
        with pytest.raises(TemplateNotFoundError):
            store.activate("welcome", 7)
        assert store.get_active("welcome").version == 1

    @pytest.mark.parametrize("seed", range(12))
    def test_random_interleavings_keep_one_active_version(self, db_session, seed):
        """Random create/activate sequences never leave two active versions."""
        rng = random.Random(seed)
        store = TemplateStore(db_session)
        names = ["welcome", "nudge", "receipt"]
        versions = {name: [] for name in names}
        expected_active = {}

        for _ in range(40):
            name = rng.choice(names)
            if not versions[name] or rng.random() < 0.35:
                activate = rng.random() < 0.5
                template = store.create_version(
                    name=name, subject=f"{name}", html_content="<p>body</p>", activate=activate
                )
                versions[name].append(template.version)
                if activate:
                    expected_active[name] = template.version
            else:
                version = rng.choice(versions[name])
                store.activate(name, version)
                expected_active[name] = version

            for n in names:
                assert _active_count(db_session, n) <= 1
                if n in expected_active:
                    assert store.get_active(n).version == expected_active[n]


class TestRendering:
    """Tests for Jinja2 rendering."""

    def test_html_is_autoescaped_and_text_is_not(self, db_session):
        template = TemplateStore(db_session).create_version(
            name="welcome",
            subject="Hi {{ name }}",
            html_content="<p>{{ name }}</p>",
            text_content="Hi {{ name }}",
        )
        rendered = render_template(template, {"name": "<Ada>"})
        assert rendered.html == "<p>&lt;Ada&gt;</p>"
        assert rendered.text == "Hi <Ada>"
        assert rendered.subject == "Hi <Ada>"

    def test_custom_unsubscribe_placeholder(self):
        snapshot = {
            "name": "welcome",
            "version": 1,
            "subject": "Hi",
            "html_content": "<a href=\"[[UNSUB]]\">Unsubscribe</a>",
            "text_content": None,
            "metadata": {"unsubscribe_url_placeholder": "[[UNSUB]]"},
        }
        rendered = render_template(snapshot, {}, unsubscribe_url="https://app.test/unsubscribe/abc")
        assert "https://app.test/unsubscribe/abc" in rendered.html
        assert rendered.text is None

    def test_syntax_error_raises_template_error(self):
        snapshot = {"name": "broken", "version": 1, "subject": "Hi", "html_content": "{% if %}"}
        with pytest.raises(EmailTemplateError):
            render_template(snapshot, {})

    def test_snapshot_applies_subject_override(self, db_session):
        template = TemplateStore(db_session).create_version(name="welcome", subject="Hi", html_content="<p/>")
        snapshot = snapshot_template(template, subject_override="Day 2: {{ name }}")
        assert snapshot["subject"] == "Day 2: {{ name }}"
        assert snapshot["version"] == 1

    def test_preview_renders_placeholder_link(self, db_session):
        template = TemplateStore(db_session).create_version(
            name="welcome", subject="Hi {{ name }}", html_content="<a href=\"{{ unsubscribe_url }}\">x</a>"
        )
        rendered = TemplateStore(db_session).preview(template.id, {"name": "Ada"})
        assert rendered.subject == "Hi Ada"
        assert "#unsubscribe-preview" in rendered.html
