"""VaultStore Meta information.
   VaultStore keeps encrypted password vaults in a remote blob store,
   with a local cache and incremental (delta) updates.
"""
__title__ = 'vaultstore'
__description__ = (
   'Client-side encrypted vault storage engine with blob transport, '
   'local caching and delta updates.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2024 VaultStore Developers'
__author__ = 'VaultStore Developers'
__author_email__ = 'dev@vaultstore.invalid'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/vaultstore/vaultstore'
