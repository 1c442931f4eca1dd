# ballotbox/security/input_validator.py

import re
import bleach

# Input validation and sanitization for voter credentials and registry notes


class InputValidator:
    def __init__(self):
        self.allowed_html_tags = []
        self.allowed_html_attributes = {}

        self.patterns = {
            'email': re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'),
            'unique_id': re.compile(r'^[A-Za-z0-9][A-Za-z0-9_-]{2,63}$'),
            'xss_script': re.compile(r'<script[^>]*>.*?</script>', re.IGNORECASE | re.DOTALL),
            'xss_event': re.compile(r'\bon\w+\s*=', re.IGNORECASE)
        }

    def sanitize_string(self, input_str, max_length=255):
        if not isinstance(input_str, str):
            raise ValueError("Input must be a string")
        if len(input_str) > max_length:
            input_str = input_str[:max_length]

        sanitized = re.sub(self.patterns['xss_script'], '', input_str)
        sanitized = re.sub(self.patterns['xss_event'], '', sanitized)
        sanitized = bleach.clean(sanitized, tags=self.allowed_html_tags,
                                 attributes=self.allowed_html_attributes, strip=True)
        return sanitized.strip()

    def sanitize_optional(self, input_str, max_length=255):
        """Sanitize an optional free-text field; blank becomes None."""
        if input_str is None:
            return None
        sanitized = self.sanitize_string(input_str, max_length=max_length)
        return sanitized or None

    def normalize_email(self, email):
        if not isinstance(email, str):
            return None
        return email.strip().lower()

    def validate_email(self, email):
        return isinstance(email, str) and len(email) <= 254 and bool(self.patterns['email'].match(email))

    def validate_unique_id(self, unique_id):
        return isinstance(unique_id, str) and bool(self.patterns['unique_id'].match(unique_id))
