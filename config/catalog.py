"""
Catalog loader — the tags, message templates, rich menus and subjects that
step configs refer to by id.

Read from the YAML file named by ``catalog_path`` in settings.yaml, with the
same ``${VAR}`` substitution as the settings themselves:

    tags:
      - {id: 1, name: 初診}
    templates:
      - {id: 10, name: welcome, content: "{name}さん、ご登録ありがとうございます"}
    rich_menus:
      - {id: 3, name: member, line_rich_menu_id: "${LINE_MEMBER_MENU_ID}"}
    subjects:
      - subject_id: patient-1
        channel_id: U1234567890
        display_name: 田中
        custom_fields: {rank: VIP会員}
        tag_ids: [1]
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import structlog
import yaml

from config.settings import _process_values
from models.schemas import MessageTemplate, RichMenu, SubjectContext, Tag

logger = structlog.get_logger()


@dataclass
class Catalog:
    tags: list[Tag] = field(default_factory=list)
    templates: list[MessageTemplate] = field(default_factory=list)
    rich_menus: list[RichMenu] = field(default_factory=list)
    subjects: list[SubjectContext] = field(default_factory=list)
    subject_tags: dict[str, set[int]] = field(default_factory=dict)   # subject_id → assigned tag ids

    def is_empty(self) -> bool:
        return not (self.tags or self.templates or self.rich_menus or self.subjects)


def load_catalog(path: str) -> Catalog:
    """Load and validate a catalog file. A missing file is an error."""
    if not Path(path).exists():
        raise FileNotFoundError(f"catalog file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    raw = _process_values(raw)

    catalog = Catalog(
        tags=[Tag.model_validate(t) for t in raw.get("tags") or []],
        templates=[MessageTemplate.model_validate(t) for t in raw.get("templates") or []],
        rich_menus=[RichMenu.model_validate(m) for m in raw.get("rich_menus") or []],
    )
    for entry in raw.get("subjects") or []:
        entry = dict(entry)
        tag_ids = entry.pop("tag_ids", None) or []
        subject = SubjectContext.model_validate(entry)
        if not subject.subject_id:
            raise ValueError(f"catalog subject without subject_id in {path}")
        catalog.subjects.append(subject)
        if tag_ids:
            catalog.subject_tags[subject.subject_id] = {int(t) for t in tag_ids}

    logger.info("catalog_loaded", path=path,
                tags=len(catalog.tags), templates=len(catalog.templates),
                rich_menus=len(catalog.rich_menus), subjects=len(catalog.subjects))
    return catalog
