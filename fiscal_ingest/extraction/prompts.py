"""Instructions sent to the vision model for each extraction pass.

Answers are requested as bare JSON. Field names match the raw payload keys the
pipeline reads (and that the QR parser produces).
"""

PRIMARY_PROMPT = """Extrai dados desta factura portuguesa. Responde APENAS com JSON válido (sem markdown):
{"supplier_nif":"123456789"|null,"supplier_vat_id":"ESB12345678"|null,"supplier_name":"Nome"|null,\
"customer_nif":"987654321"|null,"document_date":"2025-01-15","document_number":"FT 2025/123"|null,\
"document_type":"FT"|null,"atcud":"ABCD1234-1"|null,"base_exempt":0,"base_reduced":0,"vat_reduced":0,\
"base_intermediate":0,"vat_intermediate":0,"base_standard":100.00,"vat_standard":23.00,\
"total_vat":23.00,"total_amount":123.00,"fiscal_region":"PT","fiscal_period":"202501","confidence":85}

Regras:
- document_date é a data de emissão, nunca a data de vencimento ou de débito bancário.
- supplier_nif é o NIF português (9 dígitos) do emitente; supplier_vat_id só para fornecedores estrangeiros.
- Taxas IVA no Continente: 6% (reduced), 13% (intermediate), 23% (standard); isento (exempt).
  Açores: 4%, 9%, 16%. Madeira: 5%, 12%, 22%. fiscal_region: PT, PT-AC ou PT-MA.
- total_amount é o total a pagar do documento.
- Se não conseguires extrair document_date ou total_amount, usa confidence:0."""

TAX_ID_PROMPT = """Nesta factura, identifica APENAS os números de contribuinte.
Procura junto de "NIF", "NIPC", "Contribuinte", "N.º Contribuinte" ou "VAT".
Responde APENAS com JSON válido (sem markdown):
{"supplier_nif":"123456789"|null,"supplier_vat_id":"ESB12345678"|null,"customer_nif":"987654321"|null}

supplier_nif é o NIF do emitente (quem vende), não o do cliente."""

SECTION_TOTALS_PROMPT = """Esta factura tem várias secções (por exemplo eletricidade e gás, ou vários períodos).
Ignora as linhas de detalhe de cada secção e lê APENAS o resumo final do documento.
Responde APENAS com JSON válido (sem markdown):
{"total_vat":8.98,"regularization_vat":1.25|null}

- total_vat é o IVA total do documento, sem incluir regularizações de períodos anteriores.
- regularization_vat é o valor de IVA de regularização (crédito) se existir, como número positivo."""
