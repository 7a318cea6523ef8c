"""
Template and certificate services.

Templates may be edited until one of their certificates is batched or
issued; from then on they are immutable so issued certificates can never
change retroactively. Certificates are created in bulk, one per row of
subject data.
"""

from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy.orm import Session

from ..db.audit_service import AuditService
from ..db.models import BatchMemberModel, CertificateModel, TemplateModel
from ..storage.artifact_store import ArtifactStore
from .enums import Role, Stage
from .errors import ImmutabilityError, InvalidInput, NotFound, RendererFailure, Unauthorized
from .ledger import WorkflowLedger
from .primitives import Actor, generate_ulid, utc_now
from .rendering import DocumentRenderer, TemplateAssets
from .schemas import CertificateRecord, Template, TemplateCreate

logger = structlog.get_logger()


def require_role(actor: Actor, role: Role, action: str) -> None:
    if actor.role != role:
        raise Unauthorized(
            f"{action} requires role {role.value}; {actor.id} is {actor.role.value}"
        )


class TemplateService:
    """Service for certificate templates."""

    def __init__(
        self,
        db: Session,
        store: ArtifactStore,
        audit: Optional[AuditService] = None,
    ):
        self.db = db
        self.store = store
        self.audit = audit or AuditService(db)

    def _check_assets(self, template: TemplateCreate) -> None:
        refs = [template.background_ref, *template.logo_refs]
        for ref in refs:
            if ref:
                self.store.get_image(ref)

    def create(
        self,
        template: TemplateCreate,
        actor: Actor,
        trace_id: Optional[str] = None,
    ) -> TemplateModel:
        """Create a new Template."""
        require_role(actor, Role.ISSUER, "Creating a template")
        self._check_assets(template)

        now = utc_now()
        db_template = TemplateModel(
            id=generate_ulid(),
            name=template.name,
            background_ref=template.background_ref,
            logo_refs=list(template.logo_refs),
            field_schema=list(template.field_schema),
            layout=dict(template.layout),
            created_by=actor.id,
            created_at=now,
            updated_at=now,
        )
        self.db.add(db_template)
        self.db.flush()
        self.audit.log_create("Template", db_template.id, db_template.to_dict(), actor,
                              trace_id=trace_id)
        self.db.commit()
        logger.info("template_created", template_id=db_template.id, actor_id=actor.id)
        return db_template

    def get(self, template_id: str) -> TemplateModel:
        template = self.db.get(TemplateModel, template_id)
        if template is None:
            raise NotFound(f"Template '{template_id}' not found", template_id=template_id)
        return template

    def get_schema(self, template_id: str) -> Template:
        return Template.model_validate(self.get(template_id).to_dict())

    def is_locked(self, template_id: str) -> bool:
        """True once any of the template's certificates is batched or issued."""
        issued = (
            self.db.query(CertificateModel.id)
            .filter(
                CertificateModel.template_id == template_id,
                CertificateModel.current_stage != Stage.DRAFTED.value,
            )
            .first()
        )
        if issued is not None:
            return True
        return (
            self.db.query(BatchMemberModel)
            .join(CertificateModel, CertificateModel.id == BatchMemberModel.certificate_id)
            .filter(CertificateModel.template_id == template_id)
            .first()
            is not None
        )

    def update(
        self,
        template_id: str,
        changes: TemplateCreate,
        actor: Actor,
        trace_id: Optional[str] = None,
    ) -> TemplateModel:
        require_role(actor, Role.ISSUER, "Editing a template")
        db_template = self.get(template_id)
        if self.is_locked(template_id):
            raise ImmutabilityError("Template", template_id)
        self._check_assets(changes)

        before = db_template.to_dict()
        db_template.name = changes.name
        db_template.background_ref = changes.background_ref
        db_template.logo_refs = list(changes.logo_refs)
        db_template.field_schema = list(changes.field_schema)
        db_template.layout = dict(changes.layout)
        db_template.updated_at = utc_now()
        self.db.flush()
        self.audit.log_update("Template", template_id, before, db_template.to_dict(), actor,
                              trace_id=trace_id)
        self.db.commit()
        return db_template

    def load_assets(self, template: Template) -> TemplateAssets:
        return TemplateAssets(
            background=self.store.get(template.background_ref) if template.background_ref else None,
            logos=[self.store.get(ref) if ref else None for ref in template.logo_refs],
        )

    def preview(
        self,
        template_id: str,
        row: Mapping[str, Any],
        renderer: DocumentRenderer,
    ) -> bytes:
        """Render one row without creating a certificate."""
        template = self.get_schema(template_id)
        fields = {str(k): "" if v is None else str(v) for k, v in row.items()}
        assets = self.load_assets(template)
        try:
            return renderer.render_document(template, fields, assets)
        except Exception as exc:
            raise RendererFailure(f"Preview rendering failed: {exc}") from exc


class CertificateService:
    """Bulk creation and listing of certificate records."""

    def __init__(self, db: Session, audit: Optional[AuditService] = None):
        self.db = db
        self.audit = audit or AuditService(db)
        self.ledger = WorkflowLedger(db)

    @staticmethod
    def validate_rows(field_schema: List[str], rows: List[Mapping[str, Any]]) -> None:
        problems: Dict[int, List[str]] = {}
        for index, row in enumerate(rows):
            missing = [
                name for name in field_schema
                if row.get(name) is None or str(row.get(name)).strip() == ""
            ]
            if missing:
                problems[index] = missing
        if problems:
            raise InvalidInput(
                f"{len(problems)} row(s) are missing required fields",
                missing_fields={str(k): v for k, v in problems.items()},
            )

    def create_many(
        self,
        template_id: str,
        rows: List[Mapping[str, Any]],
        actor: Actor,
        trace_id: Optional[str] = None,
    ) -> List[CertificateRecord]:
        """Create one drafted certificate per row; all rows or none."""
        require_role(actor, Role.ISSUER, "Creating certificates")
        template = self.db.get(TemplateModel, template_id)
        if template is None:
            raise NotFound(f"Template '{template_id}' not found", template_id=template_id)
        if not rows:
            raise InvalidInput("At least one row is required")
        self.validate_rows(list(template.field_schema or []), rows)

        trace_id = trace_id or generate_ulid()
        try:
            records = [
                self.ledger.create_record(template_id, dict(row), actor) for row in rows
            ]
            for record in records:
                self.audit.log_create("Certificate", record.id, record.to_dict(), actor,
                                      trace_id=trace_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "certificates_created",
            template_id=template_id,
            count=len(records),
            actor_id=actor.id,
            trace_id=trace_id,
        )
        return [CertificateRecord.model_validate(r.to_dict()) for r in records]
