"""
Credential encryption/decryption and the typed Shopify credential record.
"""
import base64
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from cryptography.fernet import Fernet

from app.config import settings

def get_encryption_key() -> bytes:
    """Get or generate encryption key"""
    key_str = settings.ENCRYPTION_KEY
    # Ensure key is 32 bytes for Fernet
    key_bytes = key_str.encode()[:32].ljust(32, b'0')
    return base64.urlsafe_b64encode(key_bytes)

def encrypt_token(token: str) -> str:
    """Encrypt a token"""
    f = Fernet(get_encryption_key())
    return f.encrypt(token.encode()).decode()

def decrypt_token(encrypted: str) -> str:
    """Decrypt a token"""
    f = Fernet(get_encryption_key())
    return f.decrypt(encrypted.encode()).decode()


@dataclass(frozen=True)
class ShopCredentials:
    """
    Everything needed to call a shop's Admin API, plus display fields from shop.json.
    Stored on Integration.credentials with the access token encrypted.
    """

    shop: str
    access_token: str
    shop_name: Optional[str] = None
    shop_email: Optional[str] = None
    shop_domain: Optional[str] = None  # public storefront domain
    scopes: Tuple[str, ...] = field(default_factory=tuple)

    def to_storage(self) -> Dict[str, Any]:
        return {
            "shop": self.shop,
            "accessToken": encrypt_token(self.access_token),
            "shopName": self.shop_name,
            "shopEmail": self.shop_email,
            "shopDomain": self.shop_domain,
            "scopes": list(self.scopes),
        }

    @classmethod
    def from_storage(cls, data: Dict[str, Any]) -> "ShopCredentials":
        encrypted = data.get("accessToken") or ""
        return cls(
            shop=data.get("shop") or "",
            access_token=decrypt_token(encrypted) if encrypted else "",
            shop_name=data.get("shopName"),
            shop_email=data.get("shopEmail"),
            shop_domain=data.get("shopDomain"),
            scopes=tuple(data.get("scopes") or ()),
        )

    def redacted(self) -> Dict[str, Any]:
        """The only credential shape that may leave the service."""
        return {
            "shop": self.shop,
            "shopName": self.shop_name,
            "shopEmail": self.shop_email,
            "shopDomain": self.shop_domain,
            "scopes": list(self.scopes),
            "hasAccessToken": bool(self.access_token),
        }

    def __repr__(self) -> str:
        return f"ShopCredentials(shop={self.shop!r}, access_token='***')"
