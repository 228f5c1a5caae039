#!/usr/bin/env python3
"""
Core Lightning plugin wrapping outgoing bolt11 invoices into incoming hold invoices.
To run install requirements (pip install .), then
cp plugin_src/* in the CLN plugin dir, or set plugin=/path/to/invoice-wrapper.py in the CLN config to run.
Requires a hold invoice plugin (holdinvoice rpc) on the same node.
"""

import asyncio
import sys
import traceback
from plugin.cln_invoice_wrapper import CLNInvoiceWrapper


async def main():
    """main function starting the plugin"""
    try:
        invoice_wrapper = CLNInvoiceWrapper()
        await invoice_wrapper.run()
    except Exception as e:
        # will show e in the CLN logs
        print(f"ERROR: invoice wrapper plugin crashed: {e}\n{traceback.format_exc()}",
              file=sys.stderr)

if __name__ == "__main__":
    asyncio.run(main())
