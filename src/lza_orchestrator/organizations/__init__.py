"""AWS Organizations lifecycle: topology, account provisioning and moves."""
