from django.db import models
from django.conf import settings
from django.core.validators import MinValueValidator
from django.core.exceptions import ValidationError
from django.utils.timezone import localdate, now
from django.utils.translation import gettext_lazy as _
from decimal import Decimal
from datetime import date
import calendar
import uuid

from .config import DEFAULT_CONFIG


def add_years(start: date, years: int) -> date:
    """Shift a date by whole years, mapping 29 February to 28 February."""
    year = start.year + years
    day = min(start.day, calendar.monthrange(year, start.month)[1])
    return start.replace(year=year, day=day)


class ActivityType(models.TextChoices):
    COURSE = 'COURSE', _('Course/Training')
    CONFERENCE = 'CONFERENCE', _('Conference/Seminar')
    RESEARCH = 'RESEARCH', _('Research')
    REPORT = 'REPORT', _('Scientific Report')
    # Grouping key for ad-hoc submissions without a catalog entry
    OTHER = 'OTHER', _('Other')


# ============================================================================
# FOUNDATIONAL MODELS - Practitioners and Credit Policy
# ============================================================================

class Practitioner(models.Model):
    """
    A licensed healthcare practitioner whose continuing-education credits
    are tracked against compliance cycles.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    full_name = models.CharField(max_length=200)
    licence_number = models.CharField(max_length=50, blank=True, null=True, unique=True)
    licence_issued_on = models.DateField(null=True, blank=True)
    unit = models.ForeignKey(
        'accounts.Unit', on_delete=models.PROTECT,
        related_name='practitioners'
    )

    class EmploymentStatus(models.TextChoices):
        ACTIVE = 'ACTIVE', _('Active')
        ON_LEAVE = 'ON_LEAVE', _('On Leave')
        LEFT = 'LEFT', _('Left')

    employment_status = models.CharField(
        max_length=10,
        choices=EmploymentStatus.choices,
        default=EmploymentStatus.ACTIVE
    )
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL,
        null=True, blank=True, related_name='practitioner'
    )
    email = models.EmailField(blank=True)
    job_title = models.CharField(max_length=100, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['full_name']
        indexes = [
            models.Index(fields=['unit', 'employment_status']),
        ]

    def __str__(self):
        return self.full_name


class CreditRule(models.Model):
    """
    Versioned credit policy: total required credits, cycle length and
    per-category caps, with an effective date range.
    """
    name = models.CharField(max_length=200)
    total_required_credits = models.DecimalField(
        max_digits=8, decimal_places=2,
        default=Decimal('120'),
        validators=[MinValueValidator(0)]
    )
    cycle_years = models.PositiveSmallIntegerField(
        default=5,
        validators=[MinValueValidator(1)]
    )
    category_caps = models.JSONField(
        default=dict, blank=True,
        help_text="Maximum counted credits per activity type: {'CONFERENCE': 40}"
    )
    effective_from = models.DateField(null=True, blank=True)
    effective_to = models.DateField(
        null=True, blank=True,
        help_text="Null = indefinite"
    )
    is_enabled = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-effective_from', 'name']
        indexes = [
            models.Index(fields=['is_enabled', 'effective_from', 'effective_to']),
        ]

    def __str__(self):
        return f"{self.name} ({self.total_required_credits} credits / {self.cycle_years} years)"

    def clean(self):
        if self.effective_from and self.effective_to and self.effective_to < self.effective_from:
            raise ValidationError("Effective end date must be after the start date")
        validate_cap_map(self.category_caps)

    @classmethod
    def get_active(cls, on_date=None):
        """The enabled rule in force on ``on_date``, latest effective date first."""
        on_date = on_date or localdate()
        return (
            cls.objects.filter(is_enabled=True)
            .filter(models.Q(effective_from__isnull=True) | models.Q(effective_from__lte=on_date))
            .filter(models.Q(effective_to__isnull=True) | models.Q(effective_to__gte=on_date))
            .order_by(models.F('effective_from').desc(nulls_last=True))
            .first()
        )


def validate_cap_map(caps):
    if caps in (None, {}):
        return
    if not isinstance(caps, dict):
        raise ValidationError("Category caps must be a mapping of activity type to credits")
    for activity_type, cap in caps.items():
        if activity_type not in ActivityType.values:
            raise ValidationError(f"Unknown activity type in caps: {activity_type}")
        try:
            if Decimal(str(cap)) < 0:
                raise ValidationError(f"Cap for {activity_type} must be non-negative")
        except ArithmeticError:
            raise ValidationError(f"Cap for {activity_type} must be a number")


# ============================================================================
# ACTIVITY CATALOG
# ============================================================================

class AvailableCatalogManager(models.Manager):
    """Hides soft-deleted catalog entries."""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)


class ActivityCatalogEntry(models.Model):
    """
    Reusable rule template for a class of continuing-education activity:
    how recorded hours convert to credits and whether evidence is needed.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=300)
    activity_type = models.CharField(
        max_length=15,
        choices=ActivityType.choices,
        default=ActivityType.COURSE
    )

    class MeasureUnit(models.TextChoices):
        HOUR = 'HOUR', _('Hour')
        LESSON = 'LESSON', _('Lesson')
        CREDIT = 'CREDIT', _('Credit')

    measure_unit = models.CharField(
        max_length=10,
        choices=MeasureUnit.choices,
        default=MeasureUnit.HOUR
    )

    # Credit conversion
    conversion_ratio = models.DecimalField(
        max_digits=8, decimal_places=4,
        default=Decimal('1'),
        validators=[MinValueValidator(0)],
        help_text="Credits awarded per unit"
    )
    min_hours = models.DecimalField(
        max_digits=7, decimal_places=2,
        null=True, blank=True,
        validators=[MinValueValidator(0)],
        help_text="Activities below this many hours earn no credit"
    )
    max_hours = models.DecimalField(
        max_digits=7, decimal_places=2,
        null=True, blank=True,
        validators=[MinValueValidator(0)],
        help_text="Hours above this are not credited"
    )
    evidence_required = models.BooleanField(default=True)

    # Validity and ownership
    valid_from = models.DateField(null=True, blank=True)
    valid_to = models.DateField(null=True, blank=True)
    owner_unit = models.ForeignKey(
        'accounts.Unit', on_delete=models.SET_NULL,
        null=True, blank=True, related_name='catalog_entries',
        help_text="Null = available to every unit"
    )

    class Status(models.TextChoices):
        ACTIVE = 'ACTIVE', _('Active')
        INACTIVE = 'INACTIVE', _('Inactive')
        EXPIRED = 'EXPIRED', _('Expired')

    status = models.CharField(
        max_length=10,
        choices=Status.choices,
        default=Status.ACTIVE
    )

    # Soft delete
    deleted_at = models.DateTimeField(null=True, blank=True)
    deleted_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL,
        null=True, blank=True, related_name='+'
    )

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL,
        null=True, blank=True, related_name='created_catalog_entries'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    all_objects = models.Manager()
    objects = AvailableCatalogManager()

    class Meta:
        ordering = ['activity_type', 'name']
        default_manager_name = 'all_objects'
        verbose_name = "Activity Catalog Entry"
        verbose_name_plural = "Activity Catalog"
        indexes = [
            models.Index(fields=['activity_type', 'status']),
            models.Index(fields=['owner_unit', 'deleted_at']),
        ]

    def __str__(self):
        return f"{self.name} ({self.get_activity_type_display()})"

    def clean(self):
        """Validate threshold and validity window ordering."""
        if self.min_hours is not None and self.max_hours is not None:
            if self.min_hours > self.max_hours:
                raise ValidationError({'max_hours': "Maximum hours must be greater than or equal to minimum hours"})
        if self.valid_from and self.valid_to and self.valid_to < self.valid_from:
            raise ValidationError({'valid_to': "End date must be after start date"})

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    def is_available_for(self, unit_id=None, on_date=None):
        """Whether new submissions from ``unit_id`` may use this entry."""
        on_date = on_date or localdate()
        if self.is_deleted or self.status != self.Status.ACTIVE:
            return False
        if self.valid_from and on_date < self.valid_from:
            return False
        if self.valid_to and on_date > self.valid_to:
            return False
        return self.owner_unit_id is None or self.owner_unit_id == unit_id

    def soft_delete(self, user=None):
        self.deleted_at = now()
        self.deleted_by = user
        self.save(update_fields=['deleted_at', 'deleted_by', 'updated_at'])

    def restore(self):
        self.deleted_at = None
        self.deleted_by = None
        self.save(update_fields=['deleted_at', 'deleted_by', 'updated_at'])


# ============================================================================
# COMPLIANCE CYCLES
# ============================================================================

class ComplianceCycle(models.Model):
    """
    A practitioner's multi-year credit obligation window. Cycle status is
    derived at read time, never stored.
    """
    practitioner = models.ForeignKey(
        Practitioner, on_delete=models.CASCADE,
        related_name='cycles'
    )
    start_date = models.DateField()
    end_date = models.DateField()
    required_credits = models.DecimalField(
        max_digits=8, decimal_places=2,
        validators=[MinValueValidator(0)]
    )
    category_caps = models.JSONField(
        default=dict, blank=True,
        help_text="Maximum counted credits per activity type for this cycle"
    )
    credit_rule = models.ForeignKey(
        CreditRule, on_delete=models.SET_NULL,
        null=True, blank=True, related_name='cycles'
    )

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['practitioner', '-start_date']
        indexes = [
            models.Index(fields=['practitioner', 'start_date', 'end_date']),
        ]

    def __str__(self):
        return f"{self.practitioner} {self.start_date:%Y-%m-%d} to {self.end_date:%Y-%m-%d}"

    def clean(self):
        if self.start_date and self.end_date and self.start_date >= self.end_date:
            raise ValidationError("Start date must be before end date")
        validate_cap_map(self.category_caps)

    @classmethod
    def open_from_rule(cls, practitioner, start_date, rule, config=DEFAULT_CONFIG):
        """
        Create the cycle a credit rule prescribes starting at ``start_date``.

        Without a rule the cycle gets the configured default requirement and
        length, and no category caps.
        """
        if rule is None:
            years, required, caps = config.default_cycle_years, config.default_required_credits, {}
        else:
            years, required, caps = rule.cycle_years, rule.total_required_credits, dict(rule.category_caps or {})
        cycle = cls(
            practitioner=practitioner,
            start_date=start_date,
            end_date=add_years(start_date, years),
            required_credits=required,
            category_caps=caps,
            credit_rule=rule,
        )
        cycle.full_clean()
        cycle.save()
        return cycle


# ============================================================================
# PARTICIPATION MODELS - Activity Records
# ============================================================================

class ActivityRecord(models.Model):
    """
    One practitioner's claim of having performed an activity. Stored credits
    only count once the record is approved and its evidence requirement is met.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    practitioner = models.ForeignKey(
        Practitioner, on_delete=models.CASCADE,
        related_name='activity_records'
    )
    catalog_entry = models.ForeignKey(
        ActivityCatalogEntry, on_delete=models.PROTECT,
        null=True, blank=True, related_name='records',
        help_text="Null for ad-hoc activities"
    )
    title = models.CharField(max_length=300)
    organizing_unit = models.CharField(max_length=200, blank=True)
    activity_date = models.DateField()

    hours = models.DecimalField(
        max_digits=7, decimal_places=2,
        null=True, blank=True,
        validators=[MinValueValidator(0)]
    )
    credits = models.DecimalField(
        max_digits=8, decimal_places=2,
        null=True, blank=True,
        validators=[MinValueValidator(0)],
        help_text="Converted credits as submitted"
    )
    evidence_ref = models.CharField(
        max_length=500, blank=True, null=True,
        help_text="Evidence file URL or storage key"
    )
    notes = models.TextField(blank=True)

    class Status(models.TextChoices):
        PENDING = 'PENDING', _('Pending Review')
        APPROVED = 'APPROVED', _('Approved')
        REJECTED = 'REJECTED', _('Rejected')
        REVOKED = 'REVOKED', _('Revoked')

    status = models.CharField(
        max_length=10,
        choices=Status.choices,
        default=Status.PENDING
    )

    submitted_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL,
        null=True, blank=True, related_name='submitted_records'
    )

    # Review details
    reviewer = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL,
        null=True, blank=True, related_name='reviewed_records'
    )
    reviewed_at = models.DateTimeField(null=True, blank=True)
    review_notes = models.TextField(blank=True)

    # Revocation
    revoked_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL,
        null=True, blank=True, related_name='revoked_records'
    )
    revoked_at = models.DateTimeField(null=True, blank=True)
    revocation_reason = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-activity_date', '-created_at']
        indexes = [
            models.Index(fields=['practitioner', 'activity_date']),
            models.Index(fields=['status', 'activity_date']),
            models.Index(fields=['catalog_entry', 'status']),
        ]

    def __str__(self):
        return f"{self.practitioner} - {self.title}"

    def clean(self):
        if self.pk is None and self.catalog_entry_id:
            entry = self.catalog_entry
            unit_id = self.practitioner.unit_id if self.practitioner_id else None
            if not entry.is_available_for(unit_id, self.activity_date):
                raise ValidationError({'catalog_entry': "This activity is not available for new submissions"})

    @property
    def activity_type(self):
        if self.catalog_entry_id:
            return self.catalog_entry.activity_type
        return ActivityType.OTHER


# ============================================================================
# AUDIT AND TRACKING MODELS
# ============================================================================

class AuditLog(models.Model):
    """
    Append-only audit trail for submission and catalog changes.
    """

    class Action(models.TextChoices):
        CREATE = 'CREATE', _('Created')
        UPDATE = 'UPDATE', _('Updated')
        DELETE = 'DELETE', _('Deleted')
        APPROVE = 'APPROVE', _('Approved')
        REJECT = 'REJECT', _('Rejected')
        REVOKE = 'REVOKE', _('Revoked')
        SOFT_DELETE = 'SOFT_DELETE', _('Soft Deleted')
        RESTORE = 'RESTORE', _('Restored')

    action = models.CharField(max_length=15, choices=Action.choices)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL,
        null=True, related_name='audit_logs'
    )
    content_type = models.CharField(max_length=50)
    object_id = models.CharField(max_length=64)
    content = models.JSONField(default=dict, blank=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-timestamp']
        indexes = [
            models.Index(fields=['content_type', 'object_id']),
            models.Index(fields=['actor', 'timestamp']),
            models.Index(fields=['action', 'timestamp']),
        ]

    def __str__(self):
        return f"{self.get_action_display()} {self.content_type}({self.object_id})"

    def save(self, *args, **kwargs):
        if self.pk is not None:
            raise ValidationError("Audit log entries are append-only")
        super().save(*args, **kwargs)
