"""ERPNext API Tester Meta information.
   ERPNext API Tester stores encrypted connection credentials and sends
   requests against ERPNext REST APIs.
"""
__title__ = 'erpnext_tester'
__description__ = (
   'ERPNext API Tester stores encrypted connection credentials '
   'and sends requests against ERPNext REST APIs.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2026 ERPNext API Tester Developers'
__author__ = 'ERPNext API Tester Developers'
__author_email__ = ''
__license__ = 'Apache-2.0'
__url__ = ''
