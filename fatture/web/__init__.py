"""
Integrazione con il layer di presentazione (filtri Jinja).
"""
