# ============================================
# Solver core
# ============================================
#
#   detector      Cloudflare interstitial predicate
#   cookies       domain-scoped cookie jar + Set-Cookie parsing
#   api_client    createTask / waitTaskResult / getTaskResult
#   transport     curl_cffi dispatch
#   orchestrator  CloudflareSolver (dispatch → solve → retry → escalate)
# ============================================
