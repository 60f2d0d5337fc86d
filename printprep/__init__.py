"""Print preparation service: bleed extension, cut lines and PDF export."""
