# ============================================
# Helper executables
# ============================================
#
#   provisioner  download + version tracking (cache dir, version.json)
#   supervisor   process lifecycle shared by both kinds
#   linksocks    network-provider kind (reverse tunnel for the remote solver)
#   masktunnel   tls-fingerprint kind (local browser-TLS proxy)
# ============================================
