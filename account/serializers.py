from rest_framework.serializers import ModelSerializer
from django.contrib.auth import get_user_model
from rest_framework import serializers
User = get_user_model()

class UserSerializer(ModelSerializer):
    class Meta:
        model = User
        fields = ['id', 'first_name', 'last_name', 'email', 'role', 'vendor_name', 'created_at', 'updated_at']
        read_only_fields = ('id', 'role', 'vendor_name', 'created_at', 'updated_at')


class VendorAccountSerializer(ModelSerializer):
    class Meta:
        model = User
        fields = ['id', 'first_name', 'last_name', 'email', 'vendor_name', 'created_at', 'password']
        extra_kwargs = {
            'password': {'write_only': True},
            'vendor_name': {'required': True, 'allow_blank': False},
        }
        read_only_fields = ('id', 'created_at')

    def validate_vendor_name(self, value):
        value = (value or "").strip()
        if not value:
            raise serializers.ValidationError("vendor_name is required")
        return value

    def create(self, validated_data):
        password = validated_data.pop('password', None)
        return User.objects.create_user(role="VENDOR", password=password, **validated_data)
