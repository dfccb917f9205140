"""Backup schema of the multi-tenant platform database.

Declares every table the platform backs up, how each is attributed to a
tenant, and the foreign-key edges between them.  The restore order falls
out of ``PLATFORM_SCHEMA.restore_order``.
"""

from tenant_backup.backup.models import BackupSchema, ForeignKey, ScopeStrategy, TableDef

GLOBAL = ScopeStrategy.GLOBAL
PARENT = ScopeStrategy.PARENT
TENANT_MEMBERS = ScopeStrategy.TENANT_MEMBERS


PLATFORM_SCHEMA = BackupSchema(
    tables=[
        # Platform catalog and billing
        TableDef(name="permissions", scope=GLOBAL),
        TableDef(name="features", scope=GLOBAL),
        TableDef(name="plans", scope=GLOBAL),
        TableDef(name="bank_accounts", scope=GLOBAL),
        TableDef(name="fx_rates", scope=GLOBAL),
        TableDef(name="tenants", scope=GLOBAL),
        TableDef(name="users", scope=GLOBAL),
        TableDef(name="plan_features", scope=GLOBAL, depends_on=["plans", "features"]),
        TableDef(name="tenant_subscriptions", scope=GLOBAL, depends_on=["tenants", "plans"]),
        TableDef(name="invoices", scope=GLOBAL, depends_on=["tenants", "tenant_subscriptions"]),
        TableDef(name="trusted_devices", scope=GLOBAL, depends_on=["users"]),
        TableDef(name="email_outbox", scope=GLOBAL, depends_on=["tenants"]),
        # Tenant-owned data
        TableDef(name="roles", depends_on=["tenants"]),
        TableDef(
            name="settings",
            depends_on=["tenants"],
            not_null_text=["value"],
            redact_secrets=True,
        ),
        TableDef(name="file_records", depends_on=["tenants", "users"], best_effort=True),
        TableDef(name="notifications", depends_on=["tenants", "users"]),
        TableDef(
            name="tenant_members",
            depends_on=["tenants", "users", "roles"],
            role_refs=["role_id"],
        ),
        TableDef(
            name="role_permissions",
            scope=PARENT,
            parent=ForeignKey(table="roles", field="role_id"),
            depends_on=["permissions"],
            role_field="role_id",
        ),
        TableDef(name="notification_preferences", scope=TENANT_MEMBERS, depends_on=["users"]),
        TableDef(name="push_subscriptions", scope=TENANT_MEMBERS, depends_on=["users"]),
        TableDef(name="announcements", depends_on=["tenants", "users"]),
        TableDef(
            name="announcement_dismissals",
            scope=PARENT,
            parent=ForeignKey(table="announcements", field="announcement_id"),
            depends_on=["users"],
        ),
        TableDef(
            name="support_tickets",
            depends_on=["tenants", "users"],
            user_refs=["created_by", "assigned_to"],
        ),
        TableDef(
            name="support_ticket_messages",
            scope=PARENT,
            parent=ForeignKey(table="support_tickets", field="ticket_id"),
            depends_on=["users"],
            user_refs=["author_id"],
        ),
        TableDef(
            name="support_ticket_attachments",
            scope=PARENT,
            parent=ForeignKey(table="support_ticket_messages", field="message_id"),
            depends_on=["file_records"],
        ),
        TableDef(name="audit_logs", depends_on=["tenants", "users"], tenant_export=False),
    ],
    membership_table="tenant_members",
    role_table="roles",
    user_table="users",
    session_tables=["sessions"],
)
