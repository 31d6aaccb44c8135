"""
Portal automation: login and invoice workflows, and their Playwright drivers.
"""
