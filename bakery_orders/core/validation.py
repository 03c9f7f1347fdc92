"""
Input Validation Utilities

- Kenyan mobile numbers (Safaricom/Airtel 07xx / 01xx ranges) and their
  M-Pesa MSISDN form
- Free-text sanitization for names, addresses and order notes
"""
import re


class ValidationPatterns:
    """Regex patterns for validation"""

    # Local format accepted by the storefront: 07XXXXXXXX / 01XXXXXXXX
    PHONE_KENYA = re.compile(r"^(07|01)\d{8}$")

    CUSTOMER_NAME = re.compile(r"^[A-Za-zÀ-ɏ\s\-\'\.]{2,100}$")

    ORDER_NUMBER = re.compile(r"^[CP][0-9A-Z]{6}$")


class PhoneNumberValidator:
    """Kenyan phone number validation and normalization"""

    @staticmethod
    def normalize(phone: str) -> str:
        """
        Bring any common spelling to the local 10-digit form.

        ``+254 712 345 678``, ``254712345678`` and ``712345678`` all become
        ``0712345678``. Input that cannot be mapped is returned truncated to
        10 digits and will fail ``validate``.
        """
        digits = re.sub(r"\D", "", phone or "")

        if digits.startswith("254") and len(digits) >= 12:
            return f"0{digits[3:12]}"

        if digits[:1] in ("7", "1") and len(digits) == 9:
            return f"0{digits}"

        return digits[:10]

    @staticmethod
    def validate(phone: str) -> bool:
        """True for an already-normalized local number"""
        if not phone:
            return False
        return bool(ValidationPatterns.PHONE_KENYA.match(phone))

    @classmethod
    def to_msisdn(cls, phone: str) -> str | None:
        """M-Pesa expects 2547XXXXXXXX; None if the number is not Kenyan"""
        normalized = cls.normalize(phone)
        if not cls.validate(normalized):
            return None
        return f"254{normalized[1:]}"

    @staticmethod
    def mask(phone: str) -> str:
        """Mask for logs: 0712****78"""
        if not phone or len(phone) < 6:
            return "****"
        return phone[:4] + "****" + phone[-2:]


class TextSanitizer:
    """Text sanitization for storage"""

    @staticmethod
    def sanitize(text: str | None, max_length: int = 1000) -> str:
        """
        Trim, cap length, drop null bytes and control characters, collapse
        runs of spaces. HTML escaping is left to whoever renders the text.
        """
        if not text:
            return ""

        sanitized = text.strip()[:max_length]
        sanitized = sanitized.replace("\x00", "")
        sanitized = re.sub(r"[\x01-\x08\x0b\x0c\x0e-\x1f\x7f]", "", sanitized)
        sanitized = re.sub(r" +", " ", sanitized)

        return sanitized
