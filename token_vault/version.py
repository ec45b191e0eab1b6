"""Token Vault Meta information.
   Token Vault encrypts OAuth credentials at rest and migrates
   legacy plaintext tokens into encrypted envelopes.
"""
__title__ = 'token_vault'
__description__ = (
   'Token Vault encrypts OAuth credentials at rest and migrates '
   'legacy plaintext tokens into encrypted envelopes.'
)
__version__ = '1.0.0'
__copyright__ = 'Copyright (c) 2026 OrangePrivacy'
__author__ = 'OrangePrivacy Engineering'
__author_email__ = 'engineering@orangeprivacy.io'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/orangeprivacy/token-vault'
