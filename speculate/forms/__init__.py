from flask import request
from werkzeug.datastructures import ImmutableMultiDict

from speculate.errors import ValidationError


def json_payload():
    """Request body as a dict (empty when missing or not an object)"""
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def validated_form(form_class, payload=None):
    """
    Bind a JSON body to a form and validate it

    Nested values (lists, objects) and nulls are left out of the form data;
    routes read nested values from the payload directly.

    Raises:
        ValidationError: with the form errors as details
    """
    payload = json_payload() if payload is None else payload
    formdata = ImmutableMultiDict(
        {
            key: str(value)
            for key, value in payload.items()
            if value is not None and not isinstance(value, (list, dict))
        }
    )

    form = form_class(formdata=formdata)
    if not form.validate():
        raise ValidationError("Invalid request", details=form.errors)
    return form
