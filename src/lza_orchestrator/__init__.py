"""Landing Zone Accelerator Orchestrator - Main Package.

This package provides the orchestration core of a multi-account AWS
landing zone: account provisioning, organizational unit placement,
service control policies, partition-specific resource mutation and
stage ordering for stack deployment.
"""

__version__ = "1.0.0"
__author__ = "Landing Zone Accelerator Automation Team"
