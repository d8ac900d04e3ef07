from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import User, Unit


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    list_display = ('username', 'first_name', 'last_name', 'email', 'role', 'unit', 'is_active')
    list_filter = ('role', 'unit', 'is_active')
    search_fields = ('username', 'first_name', 'last_name', 'email')
    fieldsets = BaseUserAdmin.fieldsets + (
        ('Scope', {'fields': ('role', 'unit')}),
    )


@admin.register(Unit)
class UnitAdmin(admin.ModelAdmin):
    list_display = ('name', 'management_level', 'parent', 'is_active')
    list_filter = ('management_level', 'is_active')
    search_fields = ('name',)
