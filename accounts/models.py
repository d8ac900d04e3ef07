from django.db import models
from django.contrib.auth.models import AbstractUser, UserManager
from django.utils.translation import gettext_lazy as _


class Unit(models.Model):
    """
    Organizational unit (health department, hospital, centre or clinic).
    Practitioners, catalog entries and reviewers are scoped to a unit.
    """

    class ManagementLevel(models.TextChoices):
        DEPARTMENT_OF_HEALTH = 'DOH', _('Department of Health')
        HOSPITAL = 'HOSPITAL', _('Hospital')
        CENTRE = 'CENTRE', _('Medical Centre')
        CLINIC = 'CLINIC', _('Clinic')

    name = models.CharField(max_length=200, unique=True)
    management_level = models.CharField(
        max_length=10,
        choices=ManagementLevel.choices,
        default=ManagementLevel.HOSPITAL,
    )
    parent = models.ForeignKey(
        'self', null=True, blank=True, on_delete=models.SET_NULL,
        related_name='children'
    )
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ['name']

    def __str__(self):
        return self.name


class User(AbstractUser):
    """
    Extends Django's AbstractUser with a system-wide role and an optional
    unit scope. DOH administrators and auditors have no unit scope.
    """

    class Role(models.TextChoices):
        DOH_ADMIN = 'DOH_ADMIN', _('Department of Health Administrator')
        UNIT_ADMIN = 'UNIT_ADMIN', _('Unit Administrator')
        PRACTITIONER = 'PRACTITIONER', _('Practitioner')
        AUDITOR = 'AUDITOR', _('Auditor')

    role = models.CharField(
        max_length=20,
        choices=Role.choices,
        default=Role.PRACTITIONER,
        help_text="System-wide role"
    )
    unit = models.ForeignKey(
        Unit, on_delete=models.SET_NULL, null=True, blank=True,
        related_name='accounts'
    )

    objects = UserManager()

    @property
    def is_reviewer(self):
        return self.role in (self.Role.DOH_ADMIN, self.Role.UNIT_ADMIN)

    @property
    def review_scope_unit_id(self):
        """Unit the user's reviews are restricted to, or None for system-wide."""
        if self.role == self.Role.UNIT_ADMIN:
            return self.unit_id
        return None

    def __str__(self):
        return f"{self.username} ({self.get_role_display()})"
