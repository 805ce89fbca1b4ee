"""
Backend gestionale ambulatorio multi-tenant.

Struttura:
- config.py              : impostazioni da ambiente (.env)
- db.py                  : engine e sessioni SQLAlchemy
- models.py              : modelli ORM ed enum (pazienti, appuntamenti, coda, fatture)
- auth_*.py              : utenti, password e JWT
- appointment_service.py : agenda, conflitti di orario, cambi di stato, promemoria
- queue_service.py       : coda d'attesa per medico (numero, posizione, attesa stimata)
- patient_service.py     : anagrafica pazienti e medici
- billing_service.py     : fatture, pagamenti e imposte (importi in centesimi)
- audit.py               : registro di audit
- api_main.py            : API HTTP (FastAPI)
- seed.py                : dati iniziali
- cli.py                 : comandi da terminale
"""
