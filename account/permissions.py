from rest_framework import permissions


class IsPayoutAdmin(permissions.BasePermission):
    def has_permission(self, request, view):
        return bool(
            request.user
            and request.user.is_authenticated
            and getattr(request.user, "is_payout_admin", False)
        )


class IsVendor(permissions.BasePermission):
    def has_permission(self, request, view):
        return bool(
            request.user
            and request.user.is_authenticated
            and request.user.role == "VENDOR"
            and request.user.vendor_name
        )
