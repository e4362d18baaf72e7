from django.test import TestCase
from rest_framework.test import APIClient

from account.models import User


class UserModelTests(TestCase):
    def test_create_user_hashes_password(self):
        user = User.objects.create_user(
            email="vendor@example.com",
            password="Pass123!",
            vendor_name="Acme Prints",
        )

        self.assertNotEqual(user.password, "Pass123!")
        self.assertTrue(user.check_password("Pass123!"))
        self.assertEqual(user.role, "VENDOR")
        self.assertFalse(user.is_payout_admin)

    def test_create_user_requires_email(self):
        with self.assertRaisesMessage(ValueError, "Users must have an email"):
            User.objects.create_user(email="", password="Pass123!")

    def test_superuser_is_payout_admin(self):
        admin = User.objects.create_superuser(email="root@example.com", password="Pass123!")

        self.assertEqual(admin.role, "ADMIN")
        self.assertTrue(admin.is_payout_admin)
        self.assertEqual(admin.audit_identity(), "root@example.com")


class VendorAccountViewTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.admin = User.objects.create_user(
            email="admin@example.com",
            password="Pass123!",
            role="ADMIN",
            is_staff=True,
        )

    def test_admin_can_provision_vendor_login(self):
        self.client.force_authenticate(self.admin)

        response = self.client.post(
            "/auth/vendors/",
            {"email": "studio@example.com", "password": "Pass123!", "vendor_name": "Studio Nine"},
            format="json",
        )

        self.assertEqual(response.status_code, 201, response.data)
        vendor = User.objects.get(email="studio@example.com")
        self.assertEqual(vendor.role, "VENDOR")
        self.assertEqual(vendor.vendor_name, "Studio Nine")
        self.assertTrue(vendor.check_password("Pass123!"))

    def test_vendor_name_is_required(self):
        self.client.force_authenticate(self.admin)

        response = self.client.post(
            "/auth/vendors/",
            {"email": "nameless@example.com", "password": "Pass123!", "vendor_name": "  "},
            format="json",
        )

        self.assertEqual(response.status_code, 400)

    def test_vendor_cannot_provision_accounts(self):
        vendor = User.objects.create_user(email="v@example.com", password="Pass123!", vendor_name="V")
        self.client.force_authenticate(vendor)

        response = self.client.post(
            "/auth/vendors/",
            {"email": "other@example.com", "password": "Pass123!", "vendor_name": "Other"},
            format="json",
        )

        self.assertEqual(response.status_code, 403)

    def test_me_returns_vendor_binding(self):
        vendor = User.objects.create_user(email="me@example.com", password="Pass123!", vendor_name="Me Co")
        self.client.force_authenticate(vendor)

        response = self.client.get("/auth/me/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["vendor_name"], "Me Co")
