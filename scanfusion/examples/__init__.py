"""Example scripts for the ScanFusion SDK."""
