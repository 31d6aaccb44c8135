"""
CAPTCHA solving service integration.
"""

from .solver import AntiCaptchaClient, solve_recaptcha

__all__ = ["AntiCaptchaClient", "solve_recaptcha"]
