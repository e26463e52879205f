# users/tests.py
from django.test import TestCase

from .models import Role, User


class RolePermissionTest(TestCase):
    """Test module permissions granted by roles"""

    def setUp(self):
        self.admin_role = Role.objects.create(name=Role.ADMIN, display_name='Admin', is_default=True)
        self.physician_role = Role.objects.create(name=Role.PHYSICIAN, display_name='Physician', is_default=True)
        self.staff_role = Role.objects.create(name=Role.STAFF, display_name='Staff', is_default=True)

    def make_user(self, username, role=None, **kwargs):
        return User.objects.create_user(username=username, password='pass12345', role=role, **kwargs)

    def test_default_roles_get_default_permissions(self):
        """Test default roles are seeded with their module permissions"""
        self.assertEqual(self.admin_role.permissions, Role.DEFAULT_PERMISSIONS[Role.ADMIN])
        self.assertFalse(self.staff_role.permissions['reports'])
        self.assertTrue(self.admin_role.is_protected())
        self.assertFalse(self.staff_role.is_protected())

    def test_has_permission(self):
        """Test permissions follow the role"""
        admin = self.make_user('admin', self.admin_role)
        physician = self.make_user('physician', self.physician_role)
        staff = self.make_user('staff', self.staff_role)

        self.assertTrue(admin.has_permission('billing_corrections'))
        self.assertTrue(physician.has_permission('reports'))
        self.assertFalse(physician.has_permission('billing_corrections'))
        self.assertTrue(staff.has_permission('billing'))
        self.assertFalse(staff.has_permission('reports'))
        self.assertFalse(staff.has_permission('unknown_module'))

    def test_archived_role_loses_access(self):
        """Test archiving a role revokes its permissions"""
        self.staff_role.is_archived = True
        self.staff_role.save()
        staff = self.make_user('staff', self.staff_role)

        self.assertFalse(staff.has_permission('billing'))

    def test_superuser_and_roleless_users(self):
        """Test superusers have every permission and users without a role have none"""
        superuser = User.objects.create_superuser(username='root', password='pass12345')
        nobody = self.make_user('nobody')

        self.assertTrue(superuser.has_permission('maintenance'))
        self.assertFalse(nobody.has_permission('appointments'))

    def test_full_name(self):
        """Test display name falls back to the username"""
        named = self.make_user('mlopez', first_name='Maria', last_name='Lopez')
        unnamed = self.make_user('frontdesk')

        self.assertEqual(named.full_name, 'Maria Lopez')
        self.assertEqual(unnamed.full_name, 'frontdesk')
        self.assertEqual(str(named), 'Maria Lopez (mlopez)')
