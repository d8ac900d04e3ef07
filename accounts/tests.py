from django.test import TestCase

from .models import Unit, User


class UserScopeTestCase(TestCase):
    def setUp(self):
        self.unit = Unit.objects.create(name="District Hospital")

    def test_unit_admin_is_scoped_to_unit(self):
        user = User.objects.create_user('unitadmin', role=User.Role.UNIT_ADMIN, unit=self.unit)
        self.assertTrue(user.is_reviewer)
        self.assertEqual(user.review_scope_unit_id, self.unit.pk)

    def test_doh_admin_is_system_wide(self):
        user = User.objects.create_user('doh', role=User.Role.DOH_ADMIN, unit=self.unit)
        self.assertTrue(user.is_reviewer)
        self.assertIsNone(user.review_scope_unit_id)

    def test_practitioners_and_auditors_do_not_review(self):
        for role in (User.Role.PRACTITIONER, User.Role.AUDITOR):
            user = User.objects.create_user(f'user-{role}', role=role)
            self.assertFalse(user.is_reviewer)
