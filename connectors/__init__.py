"""
connectors — platform integration module for social and ads accounts.

Provides a generic connector framework that handles:
  • Daily metric, post and campaign fetches per platform
  • Rate-limited, error-mapped upstream calls
  • AES-256-GCM encryption of tokens at rest
  • Token storage, on-demand refresh and disconnect

Each platform (Instagram, LinkedIn, …) is a subclass of BaseConnector.
"""
