from typing import Any, Dict, Optional


def api_success(data: Optional[Dict[str, Any]] = None, **fields: Any) -> Dict[str, Any]:
	body: Dict[str, Any] = {"success": True}
	if data:
		body.update(data)
	body.update(fields)
	return body


def api_error(code: str, message: str, details: Optional[Any] = None) -> Dict[str, Any]:
	body: Dict[str, Any] = {"success": False, "code": code, "message": message}
	if details is not None:
		body["details"] = details
	return body
