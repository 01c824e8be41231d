"""
Scraper package - upstream clients, sync pipeline, worker and supervisor
"""
__version__ = '0.1.0'
