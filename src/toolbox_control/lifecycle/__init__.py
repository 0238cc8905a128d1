"""Environment lifecycle: provisioning, status refresh, deprovisioning."""
