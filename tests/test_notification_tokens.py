import unittest

import jwt

from app.contexts.notifications.infrastructure.tokens import (
    ALGORITHM,
    PURPOSE_APPROVAL,
    PURPOSE_QUOTE,
    InvalidTokenError,
    TokenService,
)


class TokenServiceTest(unittest.TestCase):
    def setUp(self) -> None:
        self.tokens = TokenService("unit-test-secret")

    def test_quote_token_carries_claims(self) -> None:
        token = self.tokens.issue({"rfqId": 5, "supplierId": "9", "tenant_id": "tenant-a"})
        claims = self.tokens.verify(token)
        self.assertEqual(claims["rfqId"], 5)
        self.assertEqual(claims["supplierId"], "9")
        self.assertEqual(claims["purpose"], PURPOSE_QUOTE)
        self.assertEqual(claims["exp"] - claims["iat"], 7 * 24 * 3600)

    def test_purpose_is_enforced(self) -> None:
        token = self.tokens.issue({"rfqId": 5}, purpose=PURPOSE_QUOTE)
        with self.assertRaises(InvalidTokenError):
            self.tokens.verify(token, purpose=PURPOSE_APPROVAL)

    def test_foreign_signature_is_rejected(self) -> None:
        token = TokenService("another-secret").issue({"rfqId": 5})
        with self.assertRaises(InvalidTokenError):
            self.tokens.verify(token)

    def test_expired_token_is_rejected(self) -> None:
        token = jwt.encode({"purpose": PURPOSE_QUOTE, "exp": 1}, "unit-test-secret", algorithm=ALGORITHM)
        with self.assertRaises(InvalidTokenError) as raised:
            self.tokens.verify(token)
        self.assertIn("expired", str(raised.exception))

    def test_ttl_comes_from_config(self) -> None:
        service = TokenService.from_config({"SECRET_KEY": "s", "APPROVAL_TOKEN_TTL_SECONDS": 60})
        claims = service.verify(service.issue({"stepId": 1}, purpose=PURPOSE_APPROVAL), purpose=PURPOSE_APPROVAL)
        self.assertEqual(claims["exp"] - claims["iat"], 60)

    def test_secret_is_required(self) -> None:
        with self.assertRaises(ValueError):
            TokenService("")


if __name__ == "__main__":
    unittest.main()
