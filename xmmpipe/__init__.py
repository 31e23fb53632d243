"""
xmmpipe - staged reduction of XMM-Newton EPIC-pn timing mode and RGS
          observations with SAS

Setup and reprocessing of a single OBSID is handled by the Observation class,
EPIC-pn products by EPICPipeline and RGS products by RGSPipeline. The xmmpipe
command runs the stages from a configuration file.
"""
from .errors import *
from .observation import *
from .epic import *
from .rgs import *
from .gti import *
from .lightcurve import *
from .spec_util import *
