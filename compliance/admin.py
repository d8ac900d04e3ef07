from django.contrib import admin, messages
from django.utils import timezone

from .audit import record_instance_event
from .config import EngineConfig
from .forms import ActivityCatalogEntryForm, ActivityRecordForm, ComplianceCycleForm, CreditRuleForm
from .models import (
    ActivityCatalogEntry, ActivityRecord, AuditLog, ComplianceCycle, CreditRule, Practitioner,
)
from .workflow import bulk_approve


@admin.register(Practitioner)
class PractitionerAdmin(admin.ModelAdmin):
    list_display = ['full_name', 'licence_number', 'unit', 'employment_status', 'licence_issued_on']
    list_filter = ['employment_status', 'unit']
    search_fields = ['full_name', 'licence_number', 'email']
    ordering = ['full_name']
    actions = ['open_cycle_from_active_rule']

    @admin.action(description="Open a compliance cycle from the active credit rule")
    def open_cycle_from_active_rule(self, request, queryset):
        today = timezone.localdate()
        rule = CreditRule.get_active(today)
        config = EngineConfig.from_settings()

        opened = 0
        for practitioner in queryset:
            if practitioner.cycles.filter(start_date__lte=today, end_date__gte=today).exists():
                continue
            cycle = ComplianceCycle.open_from_rule(practitioner, today, rule, config)
            record_instance_event(AuditLog.Action.CREATE, request.user, cycle)
            opened += 1

        if rule is None:
            source = f"defaults ({config.default_required_credits} credits over {config.default_cycle_years} years)"
        else:
            source = rule.name
        self.message_user(request, f"Opened {opened} cycle(s) from {source}.")


@admin.register(CreditRule)
class CreditRuleAdmin(admin.ModelAdmin):
    form = CreditRuleForm
    list_display = ['name', 'total_required_credits', 'cycle_years', 'effective_from', 'effective_to', 'is_enabled']
    list_filter = ['is_enabled']
    search_fields = ['name']
    ordering = ['-effective_from']


@admin.register(ComplianceCycle)
class ComplianceCycleAdmin(admin.ModelAdmin):
    form = ComplianceCycleForm
    list_display = ['practitioner', 'start_date', 'end_date', 'required_credits', 'credit_rule']
    list_filter = ['credit_rule']
    search_fields = ['practitioner__full_name', 'practitioner__licence_number']
    ordering = ['-start_date']
    date_hierarchy = 'start_date'


@admin.register(ActivityCatalogEntry)
class ActivityCatalogEntryAdmin(admin.ModelAdmin):
    """Lists soft-deleted entries too so they can be restored."""
    form = ActivityCatalogEntryForm
    list_display = ['name', 'activity_type', 'conversion_ratio', 'evidence_required', 'owner_unit', 'status', 'deleted_at']
    list_filter = ['activity_type', 'status', 'evidence_required', 'owner_unit']
    search_fields = ['name']
    ordering = ['activity_type', 'name']
    actions = ['soft_delete_entries', 'restore_entries']

    def get_queryset(self, request):
        return ActivityCatalogEntry.all_objects.select_related('owner_unit')

    def save_model(self, request, obj, form, change):
        if not change:
            obj.created_by = request.user
        super().save_model(request, obj, form, change)
        record_instance_event(
            AuditLog.Action.UPDATE if change else AuditLog.Action.CREATE, request.user, obj
        )

    @admin.action(description="Soft delete selected entries")
    def soft_delete_entries(self, request, queryset):
        count = 0
        for entry in queryset.filter(deleted_at__isnull=True):
            entry.soft_delete(request.user)
            record_instance_event(AuditLog.Action.SOFT_DELETE, request.user, entry)
            count += 1
        self.message_user(request, f"Soft deleted {count} catalog entries.")

    @admin.action(description="Restore selected entries")
    def restore_entries(self, request, queryset):
        count = 0
        for entry in queryset.filter(deleted_at__isnull=False):
            entry.restore()
            record_instance_event(AuditLog.Action.RESTORE, request.user, entry)
            count += 1
        self.message_user(request, f"Restored {count} catalog entries.")


@admin.register(ActivityRecord)
class ActivityRecordAdmin(admin.ModelAdmin):
    form = ActivityRecordForm
    list_display = ['title', 'practitioner', 'catalog_entry', 'activity_date', 'hours', 'credits', 'status']
    list_filter = ['status', 'catalog_entry__activity_type', 'activity_date']
    search_fields = ['title', 'practitioner__full_name', 'practitioner__licence_number']
    ordering = ['-activity_date']
    date_hierarchy = 'activity_date'
    readonly_fields = [
        'status', 'reviewer', 'reviewed_at', 'review_notes',
        'revoked_by', 'revoked_at', 'revocation_reason', 'submitted_by',
    ]
    actions = ['approve_selected']

    def save_model(self, request, obj, form, change):
        if not change:
            obj.submitted_by = request.user
        super().save_model(request, obj, form, change)

    @admin.action(description="Approve selected pending records")
    def approve_selected(self, request, queryset):
        unit_id = getattr(request.user, 'review_scope_unit_id', None)
        result = bulk_approve(list(queryset.values_list('id', flat=True)), request.user, unit_id=unit_id)
        self.message_user(
            request,
            f"Approved {result.processed_count} record(s); skipped {len(result.skipped_ids)}."
        )


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ['actor', 'action', 'content_type', 'object_id', 'timestamp']
    list_filter = ['action', 'content_type', 'timestamp']
    search_fields = ['actor__username', 'object_id']
    ordering = ['-timestamp']
    date_hierarchy = 'timestamp'
    readonly_fields = ['actor', 'action', 'content_type', 'object_id', 'content', 'ip_address', 'timestamp']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
