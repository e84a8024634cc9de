"""Provider Vault Meta information.
   Provider Vault keeps encrypted provider credentials and hands them
   to a downstream CLI harness without leaking them.
"""
__title__ = 'provider_vault'
__description__ = (
   'Encrypted provider credentials, transactional config and audited '
   'credential handoff for CLI harnesses.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2024 Provider Vault developers'
__author__ = 'Provider Vault developers'
__license__ = 'Apache-2.0'
