from rest_framework import permissions
from rest_framework.generics import ListCreateAPIView, RetrieveAPIView
from django.contrib.auth import get_user_model

from .serializers import UserSerializer, VendorAccountSerializer

User = get_user_model()


class MeView(RetrieveAPIView):
    permission_classes = [permissions.IsAuthenticated]
    serializer_class = UserSerializer

    def get_object(self):
        return self.request.user


class VendorAccountListCreateView(ListCreateAPIView):
    """Admins provision vendor logins; each one is bound to a single vendor_name."""
    queryset = User.objects.filter(role='VENDOR').order_by('vendor_name', 'email')
    permission_classes = [permissions.IsAdminUser]
    serializer_class = VendorAccountSerializer
