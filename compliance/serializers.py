from decimal import Decimal

from rest_framework import serializers

from .models import ActivityRecord, ActivityType


class CalculateCreditsSerializer(serializers.Serializer):
    catalog_entry_id = serializers.UUIDField()
    hours = serializers.DecimalField(max_digits=7, decimal_places=2, min_value=Decimal('0'))


class CycleWindowSerializer(serializers.Serializer):
    """Query parameters selecting a cycle window; both dates or neither."""
    start = serializers.DateField(required=False)
    end = serializers.DateField(required=False)
    limit = serializers.IntegerField(required=False, min_value=1, max_value=500)

    def validate(self, attrs):
        start, end = attrs.get('start'), attrs.get('end')
        if (start is None) != (end is None):
            raise serializers.ValidationError("Provide both start and end, or neither.")
        if start and end and start > end:
            raise serializers.ValidationError("start must not be after end.")
        return attrs


class CategoryLimitSerializer(serializers.Serializer):
    practitioner_id = serializers.UUIDField()
    activity_type = serializers.ChoiceField(choices=ActivityType.choices)
    proposed_credits = serializers.DecimalField(max_digits=8, decimal_places=2, min_value=Decimal('0'))
    cycle_start = serializers.DateField()
    cycle_end = serializers.DateField()

    def validate(self, attrs):
        if attrs['cycle_start'] > attrs['cycle_end']:
            raise serializers.ValidationError("cycle_start must not be after cycle_end.")
        return attrs


class StatisticsRequestSerializer(serializers.Serializer):
    practitioner_ids = serializers.ListField(
        child=serializers.UUIDField(), allow_empty=True, max_length=5000
    )
    date = serializers.DateField(required=False)


class UnitComparisonQuerySerializer(serializers.Serializer):
    page = serializers.IntegerField(required=False, default=1, min_value=1)
    page_size = serializers.IntegerField(required=False, default=20, min_value=1, max_value=100)
    search = serializers.CharField(required=False, allow_blank=True, max_length=200)


class ReviewActionSerializer(serializers.Serializer):
    """Body of a single approve / reject / revoke request."""
    notes = serializers.CharField(required=False, allow_blank=True, default='')
    reason = serializers.CharField(required=False, allow_blank=True, default='')

    def validate(self, attrs):
        action = self.context.get('action')
        if action in ('reject', 'revoke') and not attrs['reason'].strip():
            raise serializers.ValidationError({'reason': f"A reason is required to {action}."})
        return attrs


class BulkReviewSerializer(serializers.Serializer):
    ACTIONS = ('approve', 'revoke')

    action = serializers.ChoiceField(choices=ACTIONS)
    submission_ids = serializers.ListField(
        child=serializers.CharField(max_length=64), allow_empty=False, max_length=1000
    )
    notes = serializers.CharField(required=False, allow_blank=True, default='')
    reason = serializers.CharField(required=False, allow_blank=True, default='')

    def validate(self, attrs):
        if attrs['action'] == 'revoke' and not attrs['reason'].strip():
            raise serializers.ValidationError({'reason': "A reason is required to revoke."})
        return attrs


class ActivityRecordSerializer(serializers.ModelSerializer):
    activity_type = serializers.CharField(read_only=True)

    class Meta:
        model = ActivityRecord
        fields = [
            'id', 'practitioner', 'catalog_entry', 'activity_type', 'title', 'activity_date',
            'hours', 'credits', 'evidence_ref', 'status', 'reviewer', 'reviewed_at',
            'review_notes', 'revoked_by', 'revoked_at', 'revocation_reason',
        ]
        read_only_fields = fields
