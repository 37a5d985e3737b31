def pytest_addoption(parser):
    """Register the e2e script's CLI options so `pytest scripts/test_cfsolver_e2e.py --all` won't fail.

    This makes pytest accept the script's command-line flags (best-effort). It does not execute the script's main
    automatically.
    """

    # Helper to safely add options without causing conflicts if already registered
    def safe_addoption(*args, **kwargs):
        try:
            parser.addoption(*args, **kwargs)
        except ValueError:
            # Option already registered, skip
            pass

    safe_addoption("--all", action="store_true", help="Run all checks (script flag)")
    safe_addoption("--url", action="store", help="Target url (script flag)")
    safe_addoption("--sitekey", action="store", help="Turnstile site key (script flag)")
    safe_addoption("--api-base", action="store", help="CloudFlyer API base URL (script flag)")
    safe_addoption("--api-key", action="store", help="CloudFlyer API key (script flag)")
    safe_addoption("--proxy", action="store", help="Proxy for target requests (script flag)")
    safe_addoption("--check", action="store", help="Run a single check (script flag)")
    safe_addoption("--timeout", action="store", type=float, help="Solve timeout in seconds (script flag)")
    safe_addoption("--no-linksocks", action="store_true", help="Disable LinkSocks (script flag)")
    safe_addoption("--masktunnel", action="store_true", help="Enable MaskTunnel (script flag)")
    # Note: do NOT register `--verbose` here because pytest already defines it.
