"""
Handlers package - Contains all Kopf event handlers for the IRSA operator.

This package organizes handlers by trigger:
- desired_state.py: desired-state ConfigMap (periodic and on-change cycles)
- service_account.py: drift of IRSA annotations on ServiceAccounts
"""
