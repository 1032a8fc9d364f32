from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from sqlalchemy import Column

from tenantvault.domain.models import (
    Announcement,
    AnnouncementInteraction,
    Base,
    ExampleComment,
    ExamplePost,
    FileUpload,
    Folder,
    Job,
    Notification,
    NotificationPreference,
    ReportTemplate,
    ScheduledJob,
    StoredFileRecord,
    UserRoleAssignment,
    Webhook,
    WebhookDelivery,
)


class ScopedTableName(str, Enum):
    ANNOUNCEMENTS = "announcements"
    ANNOUNCEMENT_INTERACTIONS = "announcement_interactions"
    FILES = "files"
    FILE_UPLOADS = "file_uploads"
    FOLDERS = "folders"
    JOBS = "jobs"
    SCHEDULED_JOBS = "scheduled_jobs"
    REPORT_TEMPLATES = "report_templates"
    WEBHOOKS = "webhooks"
    WEBHOOK_DELIVERIES = "webhook_deliveries"
    NOTIFICATIONS = "notifications"
    NOTIFICATION_PREFERENCES = "notification_preferences"
    EXAMPLE_POSTS = "example_posts"
    EXAMPLE_COMMENTS = "example_comments"
    USER_ROLE_ASSIGNMENTS = "user_role_assignments"


@dataclass(frozen=True)
class ScopedTable:
    name: ScopedTableName
    model: type[Base]
    scope_attr: str
    pk_attr: str = "id"

    def __post_init__(self) -> None:
        # Fail at import time instead of on the first backup that touches a bad mapping.
        columns = self.model.__table__.c
        for attr in (self.scope_attr, self.pk_attr):
            if attr not in columns:
                raise LookupError(f"{self.model.__tablename__} has no column {attr!r}")
        if self.model.__tablename__ != self.name.value:
            raise LookupError(
                f"{self.name.value} is mapped to table {self.model.__tablename__!r}"
            )

    @property
    def table_name(self) -> str:
        return self.name.value

    @property
    def scope_column(self) -> Column:
        return self.model.__table__.c[self.scope_attr]

    @property
    def pk_column(self) -> Column:
        return self.model.__table__.c[self.pk_attr]

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.model.__table__.columns)

    def scope_value(self, row: dict) -> object:
        return row.get(self.scope_attr)

    def pk_value(self, row: dict) -> object:
        return row.get(self.pk_attr)


# Parents before children; deletes walk this list in reverse.
SCOPED_TABLES: tuple[ScopedTable, ...] = (
    ScopedTable(ScopedTableName.ANNOUNCEMENTS, Announcement, "org_id"),
    ScopedTable(ScopedTableName.ANNOUNCEMENT_INTERACTIONS, AnnouncementInteraction, "org_id"),
    ScopedTable(ScopedTableName.FILES, StoredFileRecord, "org_id"),
    ScopedTable(ScopedTableName.FILE_UPLOADS, FileUpload, "org_id"),
    ScopedTable(ScopedTableName.FOLDERS, Folder, "org_id"),
    ScopedTable(ScopedTableName.JOBS, Job, "org_id"),
    ScopedTable(ScopedTableName.SCHEDULED_JOBS, ScheduledJob, "organization_id"),
    ScopedTable(ScopedTableName.REPORT_TEMPLATES, ReportTemplate, "org_id"),
    ScopedTable(ScopedTableName.WEBHOOKS, Webhook, "org_id"),
    ScopedTable(ScopedTableName.WEBHOOK_DELIVERIES, WebhookDelivery, "org_id"),
    ScopedTable(ScopedTableName.NOTIFICATIONS, Notification, "org_id"),
    ScopedTable(ScopedTableName.NOTIFICATION_PREFERENCES, NotificationPreference, "org_id"),
    ScopedTable(ScopedTableName.EXAMPLE_POSTS, ExamplePost, "org_id"),
    ScopedTable(ScopedTableName.EXAMPLE_COMMENTS, ExampleComment, "org_id"),
    ScopedTable(ScopedTableName.USER_ROLE_ASSIGNMENTS, UserRoleAssignment, "tenant_id"),
)

SCOPED_TABLES_REVERSED: tuple[ScopedTable, ...] = tuple(reversed(SCOPED_TABLES))

_missing = set(ScopedTableName) - {table.name for table in SCOPED_TABLES}
if _missing or len(SCOPED_TABLES) != len(ScopedTableName):
    raise LookupError(f"scoped table catalogue is not exhaustive: {sorted(m.value for m in _missing)}")

_BY_NAME: dict[str, ScopedTable] = {table.table_name: table for table in SCOPED_TABLES}


def scoped_table_names() -> list[str]:
    return [table.table_name for table in SCOPED_TABLES]


def get_scoped_table(name: str) -> ScopedTable:
    try:
        return _BY_NAME[name]
    except KeyError as exc:
        raise LookupError(f"unknown scoped table: {name}") from exc
