"""
Supplier Matcher
Finds the supplier of a parsed document: exact code match first, then the
most similar supplier name above a threshold
"""

import logging
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional

from config import SUPPLIER_NAME_MATCH_THRESHOLD
from database_manager import DatabaseManager, db_manager

logger = logging.getLogger(__name__)

CODE_FIELDS = [
    'supplierCode', 'supplier_code', 'suppliercode',
    'accountNumber', 'account_number', 'account_no',
    'customerNumber', 'customer_number', 'customer_no',
    'ourRef', 'our_ref', 'ourReference', 'our_reference',
    'yourRef', 'your_ref', 'yourReference', 'your_reference',
]

NAME_FIELDS = [
    'supplierName', 'supplier_name', 'suppliername',
    'companyName', 'company_name', 'company',
    'vendorName', 'vendor_name', 'vendor',
    'fromName', 'from_name', 'from',
]


def name_similarity(a: str, b: str) -> float:
    return SequenceMatcher(None, a.strip().lower(), b.strip().lower()).ratio()


def _first_value(data: Dict[str, Any], fields: List[str]) -> Optional[str]:
    for field in fields:
        value = data.get(field)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


class SupplierMatcher:
    """Matches against active, non-deleted suppliers"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or db_manager

    def _active_suppliers(self) -> List[Dict[str, Any]]:
        return self.db.execute_query(
            "SELECT id, name, code FROM suppliers WHERE is_active = 1 AND deleted_at IS NULL"
        )

    def match_by_code(self, code: Optional[str]) -> Optional[Dict[str, Any]]:
        if not code or not str(code).strip():
            return None
        wanted = str(code).strip().lower()
        for supplier in self._active_suppliers():
            if supplier.get("code") and supplier["code"].strip().lower() == wanted:
                logger.info(f"Matched supplier by code: '{code}' -> {supplier['name']} (ID: {supplier['id']})")
                return supplier
        logger.info(f"No supplier found with code: '{code}'")
        return None

    def match_by_name(self, name: Optional[str],
                      threshold: float = SUPPLIER_NAME_MATCH_THRESHOLD) -> Optional[Dict[str, Any]]:
        if not name or not str(name).strip():
            return None
        suppliers = self._active_suppliers()
        if not suppliers:
            logger.info("No active suppliers to match against")
            return None

        best, best_score = None, 0.0
        for supplier in suppliers:
            score = name_similarity(name, supplier["name"])
            if score > best_score:
                best, best_score = supplier, score

        if best is not None and best_score >= threshold:
            logger.info(f"Matched supplier by name: '{name}' -> {best['name']} ({best_score:.1%} similarity)")
            return best

        logger.info(f"No supplier found matching name '{name}' (best {best_score:.1%}, threshold {threshold:.0%})")
        return None

    def find_supplier(self, parsed_data: Optional[Dict[str, Any]],
                      threshold: float = SUPPLIER_NAME_MATCH_THRESHOLD) -> Dict[str, Any]:
        """
        Resolve the supplier from parsed document fields.

        Returns:
            {supplier, match_method ('code' | 'name_fuzzy' | None), extracted_code, extracted_name, error}
        """
        result = {
            "supplier": None,
            "match_method": None,
            "extracted_code": None,
            "extracted_name": None,
            "error": None,
        }
        if not parsed_data or not isinstance(parsed_data, dict):
            result["error"] = "No parsed data provided"
            return result

        code = _first_value(parsed_data, CODE_FIELDS)
        result["extracted_code"] = code
        if code:
            supplier = self.match_by_code(code)
            if supplier:
                result.update(supplier=supplier, match_method="code")
                return result

        name = _first_value(parsed_data, NAME_FIELDS)
        result["extracted_name"] = name
        if name:
            supplier = self.match_by_name(name, threshold)
            if supplier:
                result.update(supplier=supplier, match_method="name_fuzzy")
                return result

        if not code and not name:
            result["error"] = "No supplier identifier (code or name) found in parsed document data"
        elif code and name:
            result["error"] = f'No matching supplier found for code "{code}" or name "{name}"'
        elif code:
            result["error"] = f'No matching supplier found for code "{code}"'
        else:
            result["error"] = f'No matching supplier found for name "{name}"'
        return result
