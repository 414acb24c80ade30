"""Template catalog.

The instance manager resolves template ids through a Catalog. The default
implementation serves the ``templates`` list from configuration.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

from berth.errors import NotFoundError

if TYPE_CHECKING:
    from berth.config import TemplateConfig


@dataclass(frozen=True, slots=True)
class Template:
    """Resolved image template."""

    id: str
    base_image: str | None
    technology: str
    ssh_capable: bool


class Catalog(ABC):
    """Template lookup collaborator."""

    @abstractmethod
    def resolve_template(self, template_id: str) -> Template:
        """Resolve a template.

        Raises:
            NotFoundError: if no template has this id
        """
        ...


class ConfigCatalog(Catalog):
    """Catalog backed by configured templates."""

    def __init__(self, templates: "list[TemplateConfig]") -> None:
        self._templates = {t.id: t for t in templates}

    def resolve_template(self, template_id: str) -> Template:
        cfg = self._templates.get(template_id)
        if cfg is None:
            raise NotFoundError(
                f"Template not found: {template_id}",
                details={"template_id": template_id},
            )
        return Template(
            id=cfg.id,
            base_image=cfg.base_image,
            technology=cfg.technology,
            ssh_capable=cfg.ssh_capable,
        )
