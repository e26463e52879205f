# users/models.py
from django.contrib.auth.models import AbstractUser
from django.db import models


class Role(models.Model):
    ADMIN = 'admin'
    PHYSICIAN = 'physician'
    STAFF = 'staff'

    ROLE_CHOICES = [
        (ADMIN, 'Admin'),
        (PHYSICIAN, 'Physician'),
        (STAFF, 'Staff'),
    ]

    DEFAULT_PERMISSIONS = {
        ADMIN: {
            'appointments': True,
            'billing': True,
            'billing_corrections': True,
            'reports': True,
            'maintenance': True,
        },
        PHYSICIAN: {
            'appointments': True,
            'billing': True,
            'billing_corrections': False,
            'reports': True,
            'maintenance': False,
        },
        STAFF: {
            'appointments': True,
            'billing': True,
            'billing_corrections': False,
            'reports': False,
            'maintenance': False,
        },
    }

    name = models.CharField(max_length=50, unique=True)
    display_name = models.CharField(max_length=100)
    description = models.TextField(blank=True)
    permissions = models.JSONField(default=dict, help_text="Module permissions")
    is_default = models.BooleanField(default=False)
    is_archived = models.BooleanField(default=False, help_text="Archived roles are hidden from user assignment")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']

    def __str__(self):
        return self.display_name

    def is_protected(self):
        """Only admin role is protected from editing"""
        return self.name == self.ADMIN

    def save(self, *args, **kwargs):
        # Set default permissions for default roles only if permissions are empty
        if self.is_default and not self.permissions:
            self.permissions = dict(self.DEFAULT_PERMISSIONS.get(self.name, {}))
        super().save(*args, **kwargs)


class User(AbstractUser):

    role = models.ForeignKey(Role, on_delete=models.PROTECT, null=True, blank=True)
    phone = models.CharField(max_length=20, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.get_full_name()} ({self.username})"

    def has_permission(self, module_name):
        """Check if user has permission for a specific module"""
        if self.is_superuser:
            return True
        if not self.role or self.role.is_archived:  # Users with archived roles lose access
            return False
        return self.role.permissions.get(module_name, False)

    @property
    def full_name(self):
        return self.get_full_name() or self.username
