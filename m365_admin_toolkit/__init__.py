"""
M365 Admin Toolkit
==================
Administrative utilities for a Microsoft 365 tenant:

  * mailbox-sync      keep a mailbox's permissions in line with an Entra group
  * shared-mailbox    provision a shared mailbox and wire it to a Team
  * password-expiry   password expiry report
  * sso-usage         SSO applications a user signed in to
  * sso-apps          SSO enterprise application export
  * s3                anonymous S3 bucket listing and download

Microsoft Graph is only read. Exchange Online writes are limited to an
allow-list of permission cmdlets and can be rehearsed with --dry-run.
"""

__version__ = "1.0.0"
__author__ = "M365 Admin Toolkit"
