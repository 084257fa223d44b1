from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from django.contrib.auth.models import User
from .models import Profile


class ProfileInline(admin.StackedInline):
    model = Profile
    can_delete = False
    verbose_name_plural = 'profile'
    fk_name = 'user'


class CustomUserAdmin(BaseUserAdmin):
    inlines = (ProfileInline, )
    actions = ['verify_users', 'unverify_users']

    def get_role(self, instance):
        return instance.profile.role
    get_role.short_description = 'Role'

    def get_verified(self, instance):
        return instance.profile.is_verified
    get_verified.short_description = 'Verified'
    get_verified.boolean = True

    list_display = ('username', 'email', 'first_name',
                    'last_name', 'is_staff', 'get_role', 'get_verified')
    list_select_related = ('profile',)

    def _set_verified(self, queryset, verified):
        # Saved one by one so profile signals refresh the leaderboard.
        profiles = Profile.objects.filter(user__in=queryset).exclude(is_verified=verified)
        count = 0
        for profile in profiles:
            profile.is_verified = verified
            profile.save(update_fields=['is_verified'])
            count += 1
        return count

    def verify_users(self, request, queryset):
        count = self._set_verified(queryset, True)
        self.message_user(request, f'{count} user(s) verified.')
    verify_users.short_description = 'Verify selected users'

    def unverify_users(self, request, queryset):
        count = self._set_verified(queryset, False)
        self.message_user(request, f'{count} user(s) unverified.')
    unverify_users.short_description = 'Revoke verification of selected users'


admin.site.unregister(User)
admin.site.register(User, CustomUserAdmin)
