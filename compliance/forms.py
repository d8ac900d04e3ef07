"""
Admin forms for credit policy and catalog maintenance.

Category cap maps are edited as JSON; these forms reject unknown activity
types and negative caps before they reach the engine.
"""

from django import forms
from django.core.exceptions import ValidationError

from .models import (
    ActivityCatalogEntry, ActivityRecord, ComplianceCycle, CreditRule, validate_cap_map,
)


class CapMapFormMixin:
    """Validates the ``category_caps`` JSON field of the form's model."""

    def clean_category_caps(self):
        caps = self.cleaned_data.get('category_caps') or {}
        validate_cap_map(caps)
        return caps


class CreditRuleForm(CapMapFormMixin, forms.ModelForm):
    class Meta:
        model = CreditRule
        fields = [
            'name', 'total_required_credits', 'cycle_years', 'category_caps',
            'effective_from', 'effective_to', 'is_enabled',
        ]


class ComplianceCycleForm(CapMapFormMixin, forms.ModelForm):
    class Meta:
        model = ComplianceCycle
        fields = ['practitioner', 'start_date', 'end_date', 'required_credits', 'category_caps', 'credit_rule']

    def clean(self):
        cleaned_data = super().clean()
        practitioner = cleaned_data.get('practitioner')
        start_date = cleaned_data.get('start_date')
        end_date = cleaned_data.get('end_date')

        if practitioner and start_date and end_date:
            overlapping = ComplianceCycle.objects.filter(
                practitioner=practitioner,
                start_date__lte=end_date,
                end_date__gte=start_date,
            )
            if self.instance.pk:
                overlapping = overlapping.exclude(pk=self.instance.pk)
            if overlapping.exists():
                raise ValidationError("This cycle overlaps an existing cycle for the practitioner.")

        return cleaned_data


class ActivityCatalogEntryForm(forms.ModelForm):
    class Meta:
        model = ActivityCatalogEntry
        fields = [
            'name', 'activity_type', 'measure_unit', 'conversion_ratio', 'min_hours', 'max_hours',
            'evidence_required', 'valid_from', 'valid_to', 'owner_unit', 'status',
        ]
        widgets = {
            'valid_from': forms.DateInput(attrs={'type': 'date'}),
            'valid_to': forms.DateInput(attrs={'type': 'date'}),
        }


class ActivityRecordForm(forms.ModelForm):
    """
    Entry form for activity records. Only entries available to the
    practitioner's unit may be chosen for new records.
    """

    class Meta:
        model = ActivityRecord
        fields = [
            'practitioner', 'catalog_entry', 'title', 'organizing_unit', 'activity_date',
            'hours', 'credits', 'evidence_ref', 'notes',
        ]

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        if not self.instance.pk:
            self.fields['catalog_entry'].queryset = ActivityCatalogEntry.objects.filter(
                status=ActivityCatalogEntry.Status.ACTIVE
            )

    def clean(self):
        cleaned_data = super().clean()
        if not cleaned_data.get('catalog_entry') and cleaned_data.get('hours') is None \
                and cleaned_data.get('credits') is None:
            raise ValidationError("Ad-hoc activities need either hours or credits.")
        return cleaned_data
