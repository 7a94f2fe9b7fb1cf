"""
Module for validating currency codes and formatting monetary amounts using Babel.

"""
import decimal
import logging
from typing import Any

from babel import Locale, UnknownLocaleError, numbers

DEFAULT_LOCALE: str = 'en_US'


def is_currency_code(code: str) -> bool:
    """
    Check whether code is a known ISO 4217 currency code, e.g. 'EUR'.
    """
    return code in numbers.list_currencies()


def _parse_locale(locale: str) -> Locale:
    try:
        return Locale.parse(locale)
    except (ValueError, TypeError, UnknownLocaleError) as ex:
        logging.warning(f'Invalid locale "{locale}", using {DEFAULT_LOCALE}: {ex}')
        return Locale.parse(DEFAULT_LOCALE)


def format_amount(value: Any, currency: str, locale: str = DEFAULT_LOCALE) -> str:
    """
    Format an amount as a currency string.

    Args:
        value: A Decimal, or anything Decimal accepts. Never passed through a float.
        currency (str): Currency code such as 'USD'.
        locale (str): Locale string, e.g. 'en_US'.

    Returns:
        str: The formatted currency string, e.g. '$1,234.50'.
    """
    if not isinstance(value, decimal.Decimal):
        value = decimal.Decimal(str(value))
    return numbers.format_currency(value, currency, locale=_parse_locale(locale))
