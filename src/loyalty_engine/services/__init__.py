"""Domain services for the ledger, conversion and segmentation."""
