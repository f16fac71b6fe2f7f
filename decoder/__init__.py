"""
Question Decoder Pipeline
decoder/

Turns one exam problem (text and/or image) into N scaffolded MCQ steps
plus a solution summary, under a caller-supplied token budget.

Steps:
0. Sanitizer          — normalise math glyphs, reject multi-question input
1. Problem Parser     — structured summary + step plan of length N
   Retrieval          — optional grounding snippets (best effort)
2. Step Generator     — N MCQ candidates (fallback deployment chain)
   Salvage            — lenient recovery of malformed model output
   Quality Filter     — drop meta / recall / multi-fact items
   Replacement        — one follow-up call to fill the shortfall
3. Solution Synthesis — working steps, key points, applications  ┐ concurrent
4. Pitfalls           — common mistakes                          ┘
5. Final Answer       — fill a missing answer / unit
6. Normalizer         — canonical MCQ shape, exactly ≤ N items
"""
